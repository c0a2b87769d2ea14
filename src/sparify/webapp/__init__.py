"""Sparify JSON web application package."""
from __future__ import annotations

from .application import create_app

__all__ = ["create_app"]
