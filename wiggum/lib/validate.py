"""
Schema validation for wiggum.

Policy configuration is checked when it is loaded; ticket headers are checked
on every parse and before every render. Schemas ship with the package under
wiggum/schemas/<name>.schema.json.
"""

import json
from pathlib import Path
from typing import Any

import jsonschema
from jsonschema.exceptions import best_match

SCHEMAS_DIR = Path(__file__).parent.parent / "schemas"


class ValidationError(Exception):
    """Schema validation failed."""

    def __init__(self, schema_name: str, message: str, path: str = None):
        self.schema_name = schema_name
        self.message = message
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


# Compiled validators by schema name
_validators: dict = {}


def _validator(schema_name: str):
    if schema_name not in _validators:
        schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
        if not schema_path.exists():
            raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
        schema = json.loads(schema_path.read_text())
        cls = jsonschema.validators.validator_for(schema)
        cls.check_schema(schema)
        _validators[schema_name] = cls(schema)
    return _validators[schema_name]


def validate(data: Any, schema_name: str) -> None:
    """
    Validate data against a packaged schema.

    Args:
        data: Parsed document (policy dict or ticket header)
        schema_name: "ticket_types" or "ticket_header"

    Raises:
        ValidationError: with the most relevant failure and its location
    """
    error = best_match(_validator(schema_name).iter_errors(data))
    if error is None:
        return
    path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "(root)"
    raise ValidationError(schema_name, error.message, path)
