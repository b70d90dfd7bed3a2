"""
Change Detection - Decide whether an Update call is needed and what to send.

Comparison is attribute by attribute using the field table: sets and
unordered lists ignore order, normalized attributes are compared after
normalization, and write-only attributes are compared by fingerprint.
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

from schema import Attribute, ResourceSchema, fingerprint

logger = logging.getLogger(__name__)


@dataclass
class ChangeSet:
    """Attributes whose desired value differs from the observed value."""

    updatable: List[str] = field(default_factory=list)
    force_replace: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.updatable and not self.force_replace

    @property
    def requires_replacement(self) -> bool:
        return bool(self.force_replace)

    @property
    def changed(self) -> List[str]:
        return self.force_replace + self.updatable


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def values_equal(attribute: Attribute, desired: Any, observed: Any) -> bool:
    """Equality of one attribute's desired and observed values."""
    if attribute.write_only:
        if desired is None:
            return observed is None
        return observed is not None and fingerprint(desired) == fingerprint(observed)

    if desired is None or observed is None:
        return desired is None and observed is None

    if attribute.normalize is not None:
        desired = attribute.normalize(desired)
        observed = attribute.normalize(observed)

    if attribute.type == "object":
        return _objects_equal(attribute.nested, desired, observed)

    if attribute.type == "object_list":
        if len(desired) != len(observed):
            return False
        if attribute.order_insensitive:
            return Counter(map(_canonical, desired)) == Counter(map(_canonical, observed))
        return all(
            _objects_equal(attribute.nested, d, o) for d, o in zip(desired, observed)
        )

    if attribute.type in ("list", "set"):
        if attribute.order_insensitive:
            return Counter(map(_canonical, desired)) == Counter(map(_canonical, observed))
        return list(desired) == list(observed)

    return desired == observed


def _objects_equal(schema: ResourceSchema, desired: Any, observed: Any) -> bool:
    if not isinstance(desired, Mapping) or not isinstance(observed, Mapping):
        return desired == observed
    return all(
        values_equal(a, desired.get(a.name), observed.get(a.name))
        for a in schema.configurable
        if a.name in desired
    )


class ChangeDetector:
    """Computes ChangeSets for one resource kind. Holds no state between calls."""

    def __init__(self, schema: ResourceSchema):
        self.schema = schema

    def diff(
        self, desired: Mapping[str, Any], observed: Optional[Mapping[str, Any]]
    ) -> ChangeSet:
        """
        Compare desired with last-observed state.

        Only attributes present in desired state are compared: an attribute
        the configuration does not mention is not managed.

        Returns:
            A fresh ChangeSet partitioned into updatable and force_replace.
        """
        observed = observed or {}
        change_set = ChangeSet()
        for attribute in self.schema.configurable:
            if attribute.name not in desired:
                continue
            if values_equal(attribute, desired[attribute.name], observed.get(attribute.name)):
                continue
            if attribute.immutable:
                change_set.force_replace.append(attribute.name)
            else:
                change_set.updatable.append(attribute.name)

        if not change_set.is_empty:
            logger.debug(
                f"{self.schema.label} changes: update={change_set.updatable} "
                f"replace={change_set.force_replace}"
            )
        return change_set

    def drift(
        self, previous: Optional[Mapping[str, Any]], current: Mapping[str, Any]
    ) -> List[str]:
        """
        Attributes whose observed value changed between two reads.

        Write-only attributes are never reported: the provider does not
        return them, so they cannot drift observably.
        """
        if not previous:
            return []
        return [
            a.name
            for a in self.schema.configurable
            if not a.write_only
            and not values_equal(a, previous.get(a.name), current.get(a.name))
        ]
