"""Routers package."""

from . import (
    health,
    auth,
    credits,
    billing,
    audit,
)
