"""
Schemas shared between the Klypp backend and the Klypp client core.
"""

__version__ = "0.1.0"
