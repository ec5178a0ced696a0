"""JSON Schema validation infrastructure.

Provides schema validation for issuance manifests and records:
- Automatic ``$ref`` resolution across the packaged schemas
- Cached validators
- Error messages prefixed with the failing JSON path

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from vouchers.core import SCHEMAS_DIR, load_json

MANIFEST_SCHEMA = "issuance.manifest.schema.json"
RECORD_SCHEMA = "issuance.record.schema.json"


@lru_cache(maxsize=1)
def _schema_registry(schemas_dir: Path = SCHEMAS_DIR) -> Registry:
    """Build a registry of every packaged schema, keyed by ``$id``."""
    resources = []
    for schema_path in sorted(schemas_dir.glob("*.schema.json")):
        schema = load_json(schema_path)
        if not isinstance(schema, dict):
            raise ValueError(f"schema is not an object: {schema_path}")
        schema_id = schema.get("$id") or schema_path.name
        resource = Resource.from_contents(schema, default_specification=DRAFT202012)
        resources.append((schema_id, resource))
    return Registry().with_resources(resources)


def load_schema(name: str, schemas_dir: Path = SCHEMAS_DIR) -> Dict[str, Any]:
    path = schemas_dir / name
    if not path.is_file():
        raise FileNotFoundError(f"unknown schema: {name}")
    return load_json(path)


@lru_cache(maxsize=None)
def schema_validator(name: str) -> Draft202012Validator:
    """Create (and cache) a validator for a packaged schema."""
    schema = load_schema(name)
    return Draft202012Validator(schema, registry=_schema_registry())


def validate_against_schema(obj: Any, name: str) -> List[str]:
    """Validate ``obj``; returns error messages (empty if valid)."""
    validator = schema_validator(name)
    errors = sorted(validator.iter_errors(obj), key=lambda e: [str(p) for p in e.absolute_path])
    return [f"{error.json_path}: {error.message}" for error in errors]
