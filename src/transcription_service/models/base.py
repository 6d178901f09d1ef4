from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_storable(value: Any) -> Any:
    """Flatten enums to their raw values so any document driver can encode them."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_storable(v) for v in value]
    return value


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    Documents are stored with camelCase keys (``walletBalance``,
    ``minutesReserved``...) and validated on the way in and out of the
    store, so a malformed document fails at the boundary instead of
    leaking missing fields into the services.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
    )

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Optional explicit primary key field; defaults to "id" if present
    primary_key: ClassVar[Optional[str]] = "id"

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        This is the single place to control how models are stored;
        DB adapters can still post-process this if needed.
        """
        return _to_storable(self.model_dump(by_alias=True, exclude_none=True))

    @classmethod
    def from_db(cls, data: Mapping[str, Any]):
        doc = dict(data)
        if "_id" in doc:
            doc.setdefault("id", str(doc["_id"]))
            doc.pop("_id")
        return cls.model_validate(doc)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.

        The schema generator runs this once (e.g. from a CLI) to produce
        JSON/metadata for the document collections and their validators.
        """
        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in cls.model_fields.items():
            stored_name = field.alias or name
            properties[stored_name] = {
                "type": cls._map_type(field.annotation),
                "nullable": _is_optional(field.annotation),
                "default": _describe_default(field.default),
                "description": field.description,
            }
            if field.is_required():
                required.append(stored_name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to backend-specific types.
        """
        origin = get_origin(annotation)
        if origin is Union:
            args = [a for a in get_args(annotation) if a is not type(None)]
            if len(args) == 1:
                return DBSerializableModel._map_type(args[0])
            return "mixed"
        if origin in (list, tuple, set, frozenset):
            return "array"
        if origin is dict:
            return "object"

        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is Decimal:
            return "decimal"
        if annotation is str:
            return "string"
        if annotation is datetime:
            return "datetime"
        if isinstance(annotation, type) and issubclass(annotation, Enum):
            return "string"
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            return "object"

        name = getattr(annotation, "__name__", "object")
        return name.lower()


def _is_optional(annotation: Any) -> bool:
    return get_origin(annotation) is Union and type(None) in get_args(annotation)


def _describe_default(default: Any) -> Any:
    if isinstance(default, Enum):
        return default.value
    if isinstance(default, (str, int, float, bool)):
        return default
    if isinstance(default, Decimal):
        return str(default)
    return None
