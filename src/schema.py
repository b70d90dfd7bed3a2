"""
Resource Schema - Declarative field table for one resource kind.

Each resource kind enumerates its attributes once, tagging them as
immutable, sensitive, computed or write-only. The Translator, Finder and
ChangeDetector are all driven from this table instead of reflecting over
attribute bags at runtime.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

REDACTED = "<sensitive>"
FINGERPRINT_PREFIX = "sha256:"

ATTRIBUTE_TYPES = ("string", "bool", "int", "list", "set", "object", "object_list")

_JSON_TYPES = {
    "string": "string",
    "bool": "boolean",
    "int": "integer",
    "list": "array",
    "set": "array",
    "object": "object",
    "object_list": "array",
}


@dataclass(frozen=True)
class Attribute:
    """One entry of a resource's field table."""

    name: str
    type: str = "string"
    remote_name: Optional[str] = None
    required: bool = False
    immutable: bool = False  # change forces replacement
    sensitive: bool = False  # never logged
    computed: bool = False  # set by the provider, absent from desired state
    write_only: bool = False  # accepted by the provider but never returned
    unordered: bool = False  # list compared without regard to order
    normalize: Optional[Callable[[Any], Any]] = None  # provider normalization
    min_length: Optional[int] = None
    element_type: str = "string"
    nested: Optional["ResourceSchema"] = None

    def __post_init__(self) -> None:
        if self.type not in ATTRIBUTE_TYPES:
            raise ValueError(f"invalid attribute type for {self.name}: {self.type!r}")
        if self.type in ("object", "object_list") and self.nested is None:
            raise ValueError(f"attribute {self.name} of type {self.type} needs a nested schema")

    @property
    def wire_name(self) -> str:
        return self.remote_name or self.name

    @property
    def order_insensitive(self) -> bool:
        return self.unordered or self.type == "set"

    def to_json_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": _JSON_TYPES[self.type]}
        if self.type in ("list", "set"):
            schema["items"] = {"type": _JSON_TYPES.get(self.element_type, "string")}
            if self.type == "set":
                schema["uniqueItems"] = True
        elif self.type == "object":
            schema = self.nested.to_json_schema()
        elif self.type == "object_list":
            schema["items"] = self.nested.to_json_schema()
        if self.min_length is not None and self.type == "string":
            schema["minLength"] = self.min_length
        if not self.required:
            # None means unset for optional attributes.
            schema["type"] = [schema["type"], "null"]
        return schema


@dataclass(frozen=True)
class ResourceSchema:
    """Enumerated attributes of a resource kind."""

    type_name: str
    attributes: Tuple[Attribute, ...]
    display_name: str = ""

    def __post_init__(self) -> None:
        names = [a.name for a in self.attributes]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"duplicate attributes in {self.type_name}: {sorted(duplicates)}")

    def __getitem__(self, name: str) -> Attribute:
        for attribute in self.attributes:
            if attribute.name == name:
                return attribute
        raise KeyError(name)

    def __contains__(self, name: object) -> bool:
        return any(a.name == name for a in self.attributes)

    @property
    def label(self) -> str:
        return self.display_name or self.type_name

    @property
    def configurable(self) -> List[Attribute]:
        """Attributes that may appear in desired state."""
        return [a for a in self.attributes if not a.computed]

    @property
    def immutable_names(self) -> List[str]:
        return [a.name for a in self.attributes if a.immutable]

    @property
    def sensitive_names(self) -> List[str]:
        return [a.name for a in self.attributes if a.sensitive]

    @property
    def write_only(self) -> List[Attribute]:
        return [a for a in self.attributes if a.write_only]

    def to_json_schema(self) -> Dict[str, Any]:
        """Draft 7 JSON Schema for desired state of this kind."""
        return {
            "type": "object",
            "properties": {a.name: a.to_json_schema() for a in self.configurable},
            "required": [a.name for a in self.configurable if a.required],
            "additionalProperties": False,
        }


def fingerprint(value: Any) -> str:
    """
    Stable, non-reversible fingerprint of a sensitive value.

    Write-only attributes are stored as fingerprints so that state never
    holds the plaintext but changes can still be detected.
    """
    if isinstance(value, str) and value.startswith(FINGERPRINT_PREFIX):
        return value
    payload = json.dumps(value, sort_keys=True, default=str)
    return FINGERPRINT_PREFIX + hashlib.sha256(payload.encode()).hexdigest()


def redact(record: Optional[Mapping[str, Any]], schema: ResourceSchema) -> Dict[str, Any]:
    """Copy of a state record safe for logs and diagnostics."""
    if not record:
        return {}
    sensitive = set(schema.sensitive_names)
    return {k: (REDACTED if k in sensitive else v) for k, v in record.items()}
