"""
JSON Schema validation service.

Collects every error rather than failing on the first one, and prefixes
each message with the JSON path it refers to.
"""

from typing import Any

import jsonschema


def validate_against_schema(data: dict[str, Any], schema: dict[str, Any]) -> list[str]:
    """
    Validate a dict against a JSON schema.
    Returns a list of error messages (empty list = valid).
    """
    validator = jsonschema.Draft7Validator(schema)
    errors = []
    for error in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.path]):
        path = "/".join(str(p) for p in error.path)
        errors.append(f"{path}: {error.message}" if path else error.message)
    return errors
