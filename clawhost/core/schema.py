from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jsonschema import ValidationError
from jsonschema.validators import Draft202012Validator

from .errors import ParseFailure
from .io import read_json

DEFAULT_SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"


@dataclass(frozen=True)
class SchemaRegistry:
    schemas_base_dir: Path = DEFAULT_SCHEMAS_DIR
    _validators: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def _validator(self, schema_filename: str) -> Draft202012Validator:
        v = self._validators.get(schema_filename)
        if v is None:
            schema = read_json(self.schemas_base_dir / schema_filename)
            Draft202012Validator.check_schema(schema)
            v = Draft202012Validator(schema)
            self._validators[schema_filename] = v
        return v

    def validate(self, document: Any, schema_filename: str) -> None:
        try:
            self._validator(schema_filename).validate(document)
        except ValidationError as e:
            where = "/".join(str(p) for p in e.absolute_path) or "<root>"
            raise ParseFailure(code="SCHEMA_INVALID", message=f"{schema_filename} at {where}: {e.message}") from e
