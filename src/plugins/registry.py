"""
Resource Registry - Discovery and registration of resource kinds.

This module provides the central registry of resource kind plugins,
handling discovery via entry points, registration, and instantiation.
"""

import logging
from importlib.metadata import entry_points
from typing import Dict, List, Optional, Type

from plugins.resources.base import ResourceKind

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "driftwarden.resources"


class ResourceRegistry:
    """
    Central registry for resource kinds.

    Maps a resource type name to the ResourceKind that describes it.
    """

    def __init__(self):
        # Registered kind classes (not instantiated)
        self._kinds: Dict[str, Type[ResourceKind]] = {}

        # Cached kind metadata to avoid repeated instantiation
        self._kind_info: Dict[str, Dict[str, str]] = {}

        # Instantiated kinds
        self._instances: Dict[str, ResourceKind] = {}

    def register_resource_kind(self, kind_class: Type[ResourceKind]) -> None:
        """
        Register a resource kind class.

        Args:
            kind_class: The ResourceKind subclass to register

        Raises:
            ValueError: If the kind's field table is inconsistent
        """
        temp_instance = kind_class()
        name = temp_instance.name
        version = temp_instance.version

        missing = [f for f in temp_instance.id_format.fields if f not in temp_instance.schema]
        if missing:
            raise ValueError(
                f"Resource kind '{name}' has identifier fields missing from "
                f"its schema: {', '.join(missing)}"
            )

        if name in self._kinds:
            logger.warning(f"Overwriting existing resource kind: {name}")

        self._kinds[name] = kind_class
        self._kind_info[name] = {
            "name": name,
            "version": version,
            "label": temp_instance.schema.label,
            "import_format": temp_instance.import_format,
        }
        self._instances.pop(name, None)
        logger.info(f"Registered resource kind: {name} v{version}")

    def get_resource_kind(self, name: str) -> ResourceKind:
        """
        Get a resource kind instance.

        Raises:
            ValueError: If the kind is not registered
        """
        if name not in self._kinds:
            available = ", ".join(self._kinds.keys()) or "none"
            raise ValueError(
                f"Unknown resource kind: {name}. Available kinds: {available}"
            )

        if name not in self._instances:
            self._instances[name] = self._kinds[name]()
            logger.debug(f"Instantiated resource kind: {name}")

        return self._instances[name]

    def list_resource_kinds(self) -> List[str]:
        """List all registered resource kind names."""
        return list(self._kinds.keys())

    def has_resource_kind(self, name: str) -> bool:
        """Check if a resource kind is registered."""
        return name in self._kinds

    def get_resource_kind_info(self, name: str) -> Optional[Dict[str, str]]:
        """
        Get information about a registered resource kind.

        Returns:
            Dictionary with 'name', 'version', 'label' and 'import_format',
            or None if not found
        """
        return self._kind_info.get(name)

    def discover(self, group: str = ENTRY_POINT_GROUP) -> int:
        """
        Register resource kinds advertised through entry points.

        Returns:
            Number of kinds registered
        """
        count = 0
        for ep in entry_points(group=group):
            try:
                kind_class = ep.load()
                if kind_class in self._kinds.values():
                    continue
                self.register_resource_kind(kind_class)
                count += 1
            except Exception as e:
                logger.warning(f"Could not load resource kind {ep.name}: {e}")
        return count


# Global registry instance
_registry: Optional[ResourceRegistry] = None


def get_registry() -> ResourceRegistry:
    """Get the global resource registry singleton."""
    global _registry
    if _registry is None:
        _registry = ResourceRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_resources() -> None:
    """
    Register the built-in resource kinds and discover installed ones
    via entry points.
    """
    registry = get_registry()

    from plugins.resources.mq_user import MQUserKind

    registry.register_resource_kind(MQUserKind)

    registry.discover()
