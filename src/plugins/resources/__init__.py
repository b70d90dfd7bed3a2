"""Resource kind plugins."""

from plugins.resources.base import RemoteClient, ResourceKind

__all__ = ["RemoteClient", "ResourceKind"]
