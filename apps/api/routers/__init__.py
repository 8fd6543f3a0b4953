"""Routers package."""

from . import (
    health,
    auth,
    generations,
    subscriptions,
    webhooks,
)
