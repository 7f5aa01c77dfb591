"""Stash GraphQL API client package."""

from .cache import TTLCache
from .client import StashClient
from .models import NamedRef, Scene, SceneFile, SceneList, StashId

__all__ = [
    "NamedRef",
    "Scene",
    "SceneFile",
    "SceneList",
    "StashClient",
    "StashId",
    "TTLCache",
]
