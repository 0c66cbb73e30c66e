"""
Routing module: maps a query to the handler that should answer it.
"""

from .router import Router
from .types import DEFAULT_PROFILES, HandlerProfile, RoutingDecision, RoutingTier

__all__ = [
    'Router',
    'RoutingDecision',
    'RoutingTier',
    'HandlerProfile',
    'DEFAULT_PROFILES',
]
