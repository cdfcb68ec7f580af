"""Entity and field schema definitions used to map models onto tables."""

from __future__ import annotations

import datetime as dt
import keyword
import re
import types
import uuid
from enum import Enum
from typing import Any, Union, get_args, get_origin

from pydantic import BaseModel, Field, field_validator, model_validator

# Valid identifier: starts with letter, alphanumeric + underscores, max 64 chars.
_IDENTIFIER_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,63}$")


class FieldType(str, Enum):
    """Supported column types."""

    STRING = "string"
    TEXT = "text"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    DATE = "date"
    UUID = "uuid"
    JSON = "json"
    BINARY = "binary"


# Primary keys are restricted to scalar value types.
_KEY_TYPES: dict[FieldType, type] = {
    FieldType.INTEGER: int,
    FieldType.UUID: uuid.UUID,
    FieldType.STRING: str,
}

# Order matters: bool is a subclass of int and datetime of date.
_PYTHON_FIELD_TYPES: tuple[tuple[type, FieldType], ...] = (
    (bool, FieldType.BOOLEAN),
    (int, FieldType.INTEGER),
    (float, FieldType.FLOAT),
    (str, FieldType.STRING),
    (dt.datetime, FieldType.DATETIME),
    (dt.date, FieldType.DATE),
    (uuid.UUID, FieldType.UUID),
    (bytes, FieldType.BINARY),
)


def is_identifier(name: str) -> bool:
    """Return True if *name* is safe to use as a table or column name."""
    return bool(_IDENTIFIER_RE.match(name)) and not keyword.iskeyword(name)


class FieldSchema(BaseModel):
    """Schema definition for a single column of an entity."""

    name: str = Field(min_length=1, description="Field (column) name.")
    field_type: FieldType = Field(description="Data type of the field.")
    nullable: bool = Field(default=False, description="Whether the field accepts null values.")
    primary_key: bool = Field(default=False, description="Whether this field is the primary key.")
    unique: bool = Field(default=False, description="Whether values must be unique.")
    indexed: bool = Field(default=False, description="Whether the field should be indexed.")
    description: str | None = Field(default=None, description="Human-readable description.")

    model_config = {"extra": "forbid"}

    @field_validator("name")
    @classmethod
    def validate_field_name(cls, v: str) -> str:
        """Enforce safe identifier pattern on field names."""
        if not is_identifier(v):
            raise ValueError(
                f"Field name {v!r} is not a valid identifier. "
                "Must start with a letter, contain only alphanumeric characters "
                "and underscores, be at most 64 characters and not be a Python keyword."
            )
        return v

    @model_validator(mode="after")
    def validate_primary_key(self) -> FieldSchema:
        """A primary key is never nullable at rest and must be a scalar value type."""
        if not self.primary_key:
            return self
        if self.nullable:
            raise ValueError(f"Primary key field '{self.name}' must not be nullable")
        if self.field_type not in _KEY_TYPES:
            allowed = ", ".join(t.value for t in _KEY_TYPES)
            raise ValueError(
                f"Primary key field '{self.name}' has type {self.field_type.value!r}; "
                f"allowed key types are: {allowed}"
            )
        return self


class EntitySchema(BaseModel):
    """Schema definition for an entity persisted in a single table."""

    name: str = Field(min_length=1, description="Entity name (PascalCase recommended).")
    fields: list[FieldSchema] = Field(min_length=1, description="Fields belonging to this entity.")
    table_name: str | None = Field(
        default=None,
        description="Override for the table name. Defaults to the lower-cased entity name.",
    )

    model_config = {"extra": "forbid"}

    @field_validator("name")
    @classmethod
    def validate_entity_name(cls, v: str) -> str:
        if not is_identifier(v):
            raise ValueError(f"Entity name {v!r} is not a valid identifier.")
        return v

    @field_validator("table_name")
    @classmethod
    def validate_table_name(cls, v: str | None) -> str | None:
        if v is not None and not is_identifier(v):
            raise ValueError(f"Table name {v!r} is not a valid identifier.")
        return v

    @model_validator(mode="after")
    def validate_entity_integrity(self) -> EntitySchema:
        """Validate unique field names and exactly one primary key."""
        seen: set[str] = set()
        for f in self.fields:
            if f.name in seen:
                raise ValueError(f"Entity '{self.name}' has duplicate field name '{f.name}'")
            seen.add(f.name)

        pk_fields = [f for f in self.fields if f.primary_key]
        if len(pk_fields) == 0:
            raise ValueError(f"Entity '{self.name}' must have exactly one primary key field")
        if len(pk_fields) > 1:
            pk_names = [f.name for f in pk_fields]
            raise ValueError(f"Entity '{self.name}' has multiple primary key fields: {pk_names}")
        return self

    @property
    def table(self) -> str:
        return self.table_name or self.name.lower()

    @property
    def primary_key(self) -> FieldSchema:
        return next(f for f in self.fields if f.primary_key)

    @property
    def key_type(self) -> type:
        """Python type of primary key values: ``int``, ``uuid.UUID`` or ``str``."""
        return _KEY_TYPES[self.primary_key.field_type]

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @classmethod
    def from_model(
        cls,
        model: type[BaseModel],
        *,
        primary_key: str = "id",
        table_name: str | None = None,
        name: str | None = None,
    ) -> EntitySchema:
        """Derive an entity schema from a pydantic model's field annotations.

        ``X | None`` marks a column nullable, except for the primary key, which
        may be annotated optional to mean "not assigned yet". ``unique`` and
        ``indexed`` are read from each field's ``json_schema_extra``.

        Raises:
            ValueError: If *primary_key* is not a model field or an annotation
                cannot be mapped to a column type.
        """
        if primary_key not in model.model_fields:
            raise ValueError(f"Model {model.__name__} has no field {primary_key!r} to use as primary key")

        fields: list[FieldSchema] = []
        for field_name, info in model.model_fields.items():
            annotation, optional = _unwrap_optional(info.annotation)
            extra = info.json_schema_extra if isinstance(info.json_schema_extra, dict) else {}
            is_pk = field_name == primary_key
            fields.append(
                FieldSchema(
                    name=field_name,
                    field_type=_field_type_for(annotation, model.__name__, field_name),
                    nullable=optional and not is_pk,
                    primary_key=is_pk,
                    unique=bool(extra.get("unique", False)),
                    indexed=bool(extra.get("indexed", False)),
                    description=info.description,
                )
            )
        return cls(name=name or model.__name__, fields=fields, table_name=table_name)


def _unwrap_optional(annotation: Any) -> tuple[Any, bool]:
    """Split ``X | None`` into ``(X, True)``; other annotations pass through."""
    origin = get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        args = [a for a in get_args(annotation) if a is not type(None)]
        optional = len(args) != len(get_args(annotation))
        if len(args) == 1:
            return args[0], optional
        return annotation, optional
    return annotation, False


def _field_type_for(annotation: Any, model_name: str, field_name: str) -> FieldType:
    origin = get_origin(annotation)
    if origin in (dict, list) or annotation in (dict, list):
        return FieldType.JSON
    if isinstance(annotation, type):
        if issubclass(annotation, Enum):
            return FieldType.STRING
        for py_type, field_type in _PYTHON_FIELD_TYPES:
            if issubclass(annotation, py_type):
                return field_type
    raise ValueError(f"{model_name}.{field_name}: cannot map annotation {annotation!r} to a column type")
