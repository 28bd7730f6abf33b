"""Routers package."""

from . import (
    health,
    auth,
    generate,
    theme_preview,
    upload,
)
