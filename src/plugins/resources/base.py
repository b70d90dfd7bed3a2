"""
Resource Plugin Base - RemoteClient capability and resource kind interface.

A resource kind plugin supplies everything the generic Reconciler needs
for one remote object type: its field table, identifier format, and a
factory for the RemoteClient that talks to the provider. Kinds are
discovered via Python entry points in the 'driftwarden.resources' group.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Tuple

import aiohttp

from config import RemoteConfig
from identifiers import IdentifierFormat, ResourceIdentifier
from schema import ResourceSchema


class RemoteClient(ABC):
    """
    CRUD calls against one remote resource type.

    Every call is safe to retry after a transient failure; callers do not
    assume at-most-once delivery. Failures are raised as ClassifiedError
    subclasses (NotFoundError, TransientError, ConflictError, PermanentError).
    """

    @abstractmethod
    async def create(self, request: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Create the object.

        Args:
            request: Wire-format request body from the Translator.

        Returns:
            The provider's response body, or None if it returns no data.
        """
        pass

    @abstractmethod
    async def read(self, identifier: ResourceIdentifier) -> Optional[Dict[str, Any]]:
        """
        Read the object.

        Returns:
            The provider's wire-format description, or None for an empty result.
        """
        pass

    @abstractmethod
    async def update(
        self, identifier: ResourceIdentifier, fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """
        Apply changed fields to the object.

        Args:
            identifier: The object to update.
            fields: Wire-format fields to change.
        """
        pass

    @abstractmethod
    async def delete(self, identifier: ResourceIdentifier) -> None:
        """Delete the object."""
        pass

    @abstractmethod
    async def list(self, parent: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List objects, optionally below a parent (e.g. one broker).

        Returns:
            Wire-format summaries.
        """
        pass


class ResourceKind(ABC):
    """
    Abstract base class for resource kind plugins.

    One subclass per remote resource type. The Reconciler is generic and is
    instantiated once per kind from the values declared here.
    """

    # Send the full desired document on update instead of only changed fields.
    full_document_update: bool = False

    # Attributes sent on every update even if unchanged.
    update_includes: Tuple[str, ...] = ()

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique type name (e.g., 'mq_user')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @property
    @abstractmethod
    def schema(self) -> ResourceSchema:
        """The kind's field table."""
        pass

    @property
    @abstractmethod
    def id_format(self) -> IdentifierFormat:
        """Documented identifier/import format."""
        pass

    @abstractmethod
    def new_client(
        self, http: aiohttp.ClientSession, remote: RemoteConfig
    ) -> RemoteClient:
        """
        Build a RemoteClient bound to the caller's HTTP session.

        Args:
            http: Session owned by the current ReconcileSession.
            remote: Endpoint and credential configuration.
        """
        pass

    def identifier_from(
        self,
        desired: Mapping[str, Any],
        observed: Optional[Mapping[str, Any]] = None,
    ) -> ResourceIdentifier:
        """
        Assign the identifier of a newly created object.

        The default composes it from the identifier fields, preferring values
        the provider returned (e.g. generated ids) over declared ones.
        """
        merged = dict(desired)
        merged.update({k: v for k, v in (observed or {}).items() if v is not None})
        return self.id_format.from_attributes(merged)

    @property
    def import_format(self) -> str:
        return self.id_format.description
