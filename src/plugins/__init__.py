"""
Plugin system for the reconciliation engine.

This package provides the resource kind plugin architecture: each kind
declares its field table, identifier format and RemoteClient factory.
"""

from plugins.registry import (
    ResourceRegistry,
    get_registry,
    register_builtin_resources,
    reset_registry,
)
from plugins.resources.base import RemoteClient, ResourceKind

__all__ = [
    "RemoteClient",
    "ResourceKind",
    "ResourceRegistry",
    "get_registry",
    "register_builtin_resources",
    "reset_registry",
]
