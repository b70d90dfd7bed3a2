"""
Desired State Validation - JSON Schema checks driven by the field table.

Desired state is validated before any remote call is built, so malformed
input fails fast as a permanent error.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

from schema import ResourceSchema

logger = logging.getLogger(__name__)


def validate_resource_schema(schema: ResourceSchema) -> Tuple[bool, Optional[str]]:
    """
    Check that a field table produces a valid Draft 7 JSON Schema.

    Args:
        schema: The resource schema to check

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema.to_json_schema())
        return True, None
    except Exception as e:
        return False, f"Invalid schema for {schema.type_name}: {str(e)}"


def validate_desired_state(
    desired: Dict[str, Any], schema: ResourceSchema
) -> Tuple[bool, Optional[str]]:
    """
    Validate desired state against a resource's field table.

    Messages for sensitive attributes never include the offending value.

    Args:
        desired: The declared attributes of one resource instance
        schema: The field table of the resource kind

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(desired, dict):
        return False, f"desired state must be an object, got {type(desired).__name__}"

    sensitive = set(schema.sensitive_names)
    try:
        validator = Draft7Validator(schema.to_json_schema())
        errors = sorted(validator.iter_errors(desired), key=lambda e: list(e.absolute_path))

        if not errors:
            return True, None

        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            top = error.absolute_path[0] if error.absolute_path else None
            if top in sensitive:
                error_messages.append(f"{path}: invalid value ({error.validator} check failed)")
            else:
                error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"
