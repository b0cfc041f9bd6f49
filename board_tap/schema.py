from __future__ import annotations

from functools import lru_cache
from importlib import resources
import json
from typing import Any

from jsonschema import Draft202012Validator

SCHEMA_NAME = "module-catalog"


def load_schema() -> dict[str, Any]:
    schema_path = resources.files("board_tap").joinpath(
        f"schemas/{SCHEMA_NAME}.schema.json"
    )
    return json.loads(schema_path.read_text(encoding="utf-8"))


@lru_cache(maxsize=1)
def get_validator() -> Draft202012Validator:
    schema = load_schema()
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema=schema)


def validate_catalog(document: Any) -> list[str]:
    """Return human readable schema violations for a catalog document."""
    validator = get_validator()
    errors = sorted(
        validator.iter_errors(document),
        key=lambda e: [str(part) for part in e.absolute_path],
    )
    messages = []
    for error in errors:
        location = "/".join(str(part) for part in error.absolute_path) or "<root>"
        messages.append(f"{location}: {error.message}")
    return messages
