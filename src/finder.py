"""
Finder - Read one remote object by identifier and classify the outcome.

NotFound and TransientFailure are kept apart: NotFound drives removal from
state, a transient failure must never do so.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from errors import (
    ClassifiedError,
    ErrorKind,
    MalformedInputError,
    NotFoundError,
    PermanentError,
    TransientError,
)
from identifiers import IdentifierFormat, ResourceIdentifier
from translator import Translator

logger = logging.getLogger(__name__)


class FindOutcome(Enum):
    """Classification of a single read."""

    FOUND = "found"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass
class FindResult:
    """Result of Finder.find()."""

    outcome: FindOutcome
    observed: Optional[Dict[str, Any]] = None
    error: Optional[ClassifiedError] = None
    identifier: Optional[ResourceIdentifier] = None

    @property
    def found(self) -> bool:
        return self.outcome is FindOutcome.FOUND

    @property
    def not_found(self) -> bool:
        return self.outcome is FindOutcome.NOT_FOUND


class Finder:
    """
    Performs classified reads for one resource kind.

    Args:
        client: The kind's RemoteClient.
        translator: Translator used to build observed state from the response.
        id_format: Identifier format; used to reject empty or malformed ids
            without a remote call.
        label: Display name for messages.
    """

    def __init__(
        self,
        client: Any,
        translator: Translator,
        id_format: IdentifierFormat,
        label: str = "resource",
    ):
        self.client = client
        self.translator = translator
        self.id_format = id_format
        self.label = label

    async def find(
        self, identifier: Union[str, ResourceIdentifier, None]
    ) -> FindResult:
        """
        Read the object and classify the outcome.

        Empty or malformed identifiers are NotFound without a remote call.
        """
        parsed = self.id_format.try_parse(identifier)
        if parsed is None:
            parts = _parts(identifier, self.id_format.delimiter)
            empty = [
                name for name, part in zip(self.id_format.fields, parts) if not part
            ]
            reason = (
                f"cannot find {self.label} with an empty {empty[0].replace('_', ' ')}"
                if empty
                else f"cannot find {self.label} with malformed identifier {identifier!r}"
            )
            logger.debug(reason)
            return FindResult(FindOutcome.NOT_FOUND, error=NotFoundError(reason))

        try:
            response = await self.client.read(parsed)
        except ClassifiedError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return FindResult(FindOutcome.NOT_FOUND, error=e, identifier=parsed)
            if e.kind is ErrorKind.PERMANENT:
                return FindResult(FindOutcome.PERMANENT, error=e, identifier=parsed)
            # Conflict and anything else retryable is transient for a read.
            return FindResult(FindOutcome.TRANSIENT, error=e, identifier=parsed)
        except Exception as e:
            # Only explicitly classified errors are permanent for a read.
            error = TransientError(
                f"unexpected error reading {self.label} {parsed} ({type(e).__name__})",
                cause=e,
            )
            return FindResult(FindOutcome.TRANSIENT, error=error, identifier=parsed)

        if not response:
            error = NotFoundError(f"empty result reading {self.label} {parsed}")
            return FindResult(FindOutcome.NOT_FOUND, error=error, identifier=parsed)

        try:
            observed = self.translator.to_observed_state(response)
        except MalformedInputError as e:
            error = PermanentError(f"malformed response reading {self.label} {parsed}", e)
            return FindResult(FindOutcome.PERMANENT, error=error, identifier=parsed)

        return FindResult(FindOutcome.FOUND, observed=observed, identifier=parsed)


def _parts(identifier: Union[str, ResourceIdentifier, None], delimiter: str) -> tuple:
    if identifier is None:
        return ("",)
    if isinstance(identifier, ResourceIdentifier):
        return identifier.parts
    return tuple(str(identifier).split(delimiter))
