"""Klypp membership core: invitations, responses, cascading delete and realtime."""

__version__ = "0.1.0"
