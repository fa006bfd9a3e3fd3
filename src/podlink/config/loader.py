"""
Configuration document loading.

Reads a YAML or JSON session document and validates it into a
:class:`~podlink.config.models.Config`. Both parse errors and schema
violations surface as :class:`~podlink.core.errors.ConfigValidationError`,
the latter carrying pydantic's structured error list.

JSON is a subset of YAML, so a single ``yaml.safe_load`` handles both.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from podlink.config.models import Config
from podlink.core.errors import ConfigValidationError


def validation_errors(exc: ValidationError) -> list[dict[str, Any]]:
    """Reduce a pydantic error to JSON-safe dicts with dotted locations.

    Input values are left out so secrets never end up in logs.
    """
    return [
        {
            "loc": ".".join(str(part) for part in error["loc"]),
            "msg": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors(include_url=False, include_context=False, include_input=False)
    ]


def parse_config(data: Any, *, source: str = "<config>") -> Config:
    """Validate an already-parsed document."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigValidationError(
            f"{source}: expected a mapping at the top level, got {type(data).__name__}"
        )
    try:
        return Config.model_validate(data)
    except ValidationError as exc:
        errors = validation_errors(exc)
        summary = "; ".join(f"{e['loc'] or '<root>'}: {e['msg']}" for e in errors)
        raise ConfigValidationError(f"{source}: {summary}", errors=errors, cause=exc) from exc


def load_config_text(text: str, *, source: str = "<config>") -> Config:
    """Parse YAML/JSON text and validate it."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"{source}: invalid YAML/JSON: {exc}", cause=exc) from exc
    return parse_config(data, source=source)


def load_config(path: str | Path) -> Config:
    """Load and validate a session document from a file.

    Raises:
        ConfigValidationError: unreadable file, bad syntax or schema violation
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigValidationError(f"{path}: cannot read config: {exc}", cause=exc) from exc
    return load_config_text(text, source=str(path))
