"""
Translator - Pure mapping between state records and remote wire shapes.

Desired and observed state use the field table's attribute names; remote
requests and responses use each attribute's wire name. Nested objects and
lists of objects are expanded/flattened recursively. Nothing here touches
the network and the only error is malformed input.
"""

import logging
from typing import Any, Dict, Iterable, Mapping, Optional

from errors import MalformedInputError
from schema import Attribute, ResourceSchema
from validation import validate_desired_state

logger = logging.getLogger(__name__)


def _expand(attribute: Attribute, value: Any) -> Any:
    if value is None:
        return None
    if attribute.type == "object":
        return expand_object(attribute.nested, value)
    if attribute.type == "object_list":
        return [expand_object(attribute.nested, item) for item in value]
    if attribute.type in ("list", "set"):
        return list(value)
    return value


def _flatten(attribute: Attribute, value: Any) -> Any:
    if value is None:
        return None
    if attribute.type == "object":
        return flatten_object(attribute.nested, value)
    if attribute.type == "object_list":
        return [flatten_object(attribute.nested, item) for item in value]
    if attribute.type in ("list", "set"):
        return list(value)
    return value


def expand_object(schema: ResourceSchema, record: Mapping[str, Any]) -> Dict[str, Any]:
    """Project a state record onto its wire representation."""
    if not isinstance(record, Mapping):
        raise MalformedInputError(
            f"expected an object for {schema.type_name}, got {type(record).__name__}"
        )
    return {
        a.wire_name: _expand(a, record[a.name])
        for a in schema.attributes
        if a.name in record and record[a.name] is not None
    }


def flatten_object(schema: ResourceSchema, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Project a wire object onto attribute names (missing values become None)."""
    if not isinstance(payload, Mapping):
        raise MalformedInputError(
            f"expected an object for {schema.type_name}, got {type(payload).__name__}"
        )
    return {
        a.name: _flatten(a, payload.get(a.wire_name))
        for a in schema.attributes
        if not a.write_only
    }


class Translator:
    """
    Field-table driven translator for one resource kind.

    Round-trip guarantee: for desired state ``d`` accepted by the provider,
    ``to_observed_state(read(create(to_remote_request(d))))`` restricted to
    the keys of ``d`` equals ``d``, except for write-only attributes (never
    returned) and attributes with a ``normalize`` function.
    """

    def __init__(self, schema: ResourceSchema):
        self.schema = schema

    def validate(self, desired: Dict[str, Any]) -> None:
        """
        Raises:
            MalformedInputError: If desired state does not match the field table.
        """
        is_valid, error = validate_desired_state(desired, self.schema)
        if not is_valid:
            raise MalformedInputError(f"invalid {self.schema.label} configuration: {error}")

    def to_remote_request(
        self,
        desired: Dict[str, Any],
        only: Optional[Iterable[str]] = None,
        include: Iterable[str] = (),
    ) -> Dict[str, Any]:
        """
        Build a remote request body from desired state.

        Args:
            desired: Full desired state; always validated as a whole.
            only: If given, restrict the body to these attributes (plus
                ``include``). Used by Update to send just the changed fields.
            include: Attributes always sent when ``only`` is given, such as
                the identifier parts a provider needs in every request.

        Raises:
            MalformedInputError: If desired state is invalid.
        """
        self.validate(desired)
        request = expand_object(self.schema, {
            k: v for k, v in desired.items() if not self.schema[k].computed
        })
        if only is None:
            return request
        wanted = {self.schema[name].wire_name for name in list(only) + list(include)}
        return {k: v for k, v in request.items() if k in wanted}

    def to_observed_state(self, response: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Build a full observed state from a remote read response.

        Every non-write-only attribute of the field table is present in the
        result; attributes the provider omitted are None.

        Raises:
            MalformedInputError: If the response is not an object.
        """
        return flatten_object(self.schema, response)
