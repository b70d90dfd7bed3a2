"""
Resource identifiers and import-string formats.

A ResourceIdentifier is the stable key used for every Read/Update/Delete
after Create. Composite identifiers (``parentId/childName``) are built from
named parts with a single delimiter; the number of parts is fixed per
resource kind.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from errors import ImportFormatError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceIdentifier:
    """Immutable, possibly composite, resource key."""

    parts: Tuple[str, ...]
    delimiter: str = "/"

    def __str__(self) -> str:
        return self.delimiter.join(self.parts)

    @property
    def is_complete(self) -> bool:
        """True when no part is empty."""
        return bool(self.parts) and all(self.parts)

    def __getitem__(self, index: int) -> str:
        return self.parts[index]


@dataclass(frozen=True)
class IdentifierFormat:
    """
    Documented format of a resource's identifier.

    ``fields`` names the attributes that make up the identifier, in order.
    For example ``IdentifierFormat(("broker_id", "username"))`` describes
    identifiers of the form ``broker-id/username``.
    """

    fields: Tuple[str, ...]
    delimiter: str = "/"

    @property
    def description(self) -> str:
        return self.delimiter.join(f.replace("_", "-") for f in self.fields)

    def parse(self, raw_id: str) -> ResourceIdentifier:
        """
        Parse an import string.

        Exactly ``len(fields) - 1`` delimiters are expected and every part
        must be non-empty. Anything else is a format error; no guessing.

        Raises:
            ImportFormatError: If the string does not match the format.
        """
        if not isinstance(raw_id, str):
            raise ImportFormatError(repr(raw_id), self.description)
        parts = tuple(raw_id.split(self.delimiter))
        if len(parts) != len(self.fields) or not all(parts):
            raise ImportFormatError(raw_id, self.description)
        return ResourceIdentifier(parts, self.delimiter)

    def try_parse(
        self, value: Union[str, ResourceIdentifier, None]
    ) -> Optional[ResourceIdentifier]:
        """Like parse(), but returns None for empty or malformed input."""
        if value is None:
            return None
        if isinstance(value, ResourceIdentifier):
            if len(value.parts) != len(self.fields) or not value.is_complete:
                return None
            return value
        try:
            return self.parse(value)
        except ImportFormatError:
            return None

    def from_attributes(self, attributes: Mapping[str, Any]) -> ResourceIdentifier:
        """Compose an identifier from a state record's attributes."""
        return ResourceIdentifier(
            tuple(str(attributes.get(name) or "") for name in self.fields),
            self.delimiter,
        )

    def to_attributes(self, identifier: ResourceIdentifier) -> Dict[str, str]:
        """Split an identifier back into its named attributes."""
        return dict(zip(self.fields, identifier.parts))
