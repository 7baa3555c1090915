"""
Annotation Validation - parsing of the shoot addon-list annotation.

The annotation holds a JSON array of addon base names. It is validated
with a JSON Schema before any AddonInstance is derived from it.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft7Validator

from errors import AnnotationParseError, AnnotationValidationError

logger = logging.getLogger(__name__)

ADDON_LIST_SCHEMA: Dict[str, Any] = {
    "type": "array",
    "items": {"type": "string", "minLength": 1},
}


def validate_against_schema(
    value: Any, schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a value against a JSON Schema.

    Returns:
        Tuple of (is_valid, error_message)
    """
    validator = Draft7Validator(schema)
    errors = list(validator.iter_errors(value))

    if not errors:
        return True, None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        error_messages.append(f"{path}: {error.message}")

    return False, "; ".join(error_messages)


def parse_addon_annotation(value: Optional[str]) -> List[str]:
    """
    Parse the addon-list annotation into addon names.

    A missing annotation means no addons.

    Raises:
        AnnotationParseError: If the value is not valid JSON
        AnnotationValidationError: If it is not a list of names, or a name repeats
    """
    if value is None:
        return []

    try:
        names = json.loads(value)
    except json.JSONDecodeError as e:
        raise AnnotationParseError(f"addon annotation is not valid JSON: {e}") from e

    is_valid, error = validate_against_schema(names, ADDON_LIST_SCHEMA)
    if not is_valid:
        raise AnnotationValidationError(f"invalid addon annotation: {error}")

    if len(set(names)) != len(names):
        raise AnnotationValidationError(f"duplicate addons specified: {names}")

    return names
