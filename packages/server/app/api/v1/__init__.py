"""
API v1 Routers

Table and procedure calls live under /rest/v1, the change stream under
/realtime/v1.
"""

from fastapi import APIRouter

from . import realtime, rest

rest_router = APIRouter()
rest_router.include_router(rest.router, tags=["Tables"])

realtime_router = APIRouter()
realtime_router.include_router(realtime.router, tags=["Realtime"])
