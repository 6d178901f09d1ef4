from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Optional, Sequence, Type

from .models.base import DBSerializableModel
from .models.job import TranscriptionJob
from .models.ledger import LedgerEntry
from .models.notification import NotificationEvent
from .models.pricing import PricingSettings
from .models.subscription import Subscription
from .models.transaction import Transaction
from .models.usage import MinuteReservation, UsageRecord
from .models.user import UserAccount
from .models.webhook import WebhookEvent


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    UserAccount,
    TranscriptionJob,
    MinuteReservation,
    UsageRecord,
    Subscription,
    WebhookEvent,
    Transaction,
    PricingSettings,
    NotificationEvent,
    LedgerEntry,
]

_BSON_TYPES = {
    "integer": ["int", "long"],
    "number": ["double", "int", "long"],
    "decimal": ["decimal"],
    "boolean": ["bool"],
    "string": ["string"],
    "datetime": ["date"],
    "array": ["array"],
    "object": ["object"],
}


def generate_logical_schema() -> Dict[str, Any]:
    """
    Generate a backend-agnostic logical schema for all registered models.
    This is the single source of truth; the renderers below convert it.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    return json.dumps(schema, indent=2, default=str)


def render_mongo_validators(schema: Dict[str, Any]) -> Dict[str, Any]:
    """
    Render a `$jsonSchema` validator per collection, usable with
    `collMod` or `create_collection(validator=...)`.
    """
    validators: Dict[str, Any] = {}
    for collection, spec in schema.items():
        properties: Dict[str, Any] = {}
        for field_name, meta in spec["properties"].items():
            bson_types = _BSON_TYPES.get(meta["type"])
            if bson_types is None:
                # "mixed" and unknown types are left unconstrained.
                properties[field_name] = {}
                continue
            types = list(bson_types)
            if meta.get("nullable"):
                types.append("null")
            prop: Dict[str, Any] = {"bsonType": types if len(types) > 1 else types[0]}
            if meta.get("description"):
                prop["description"] = meta["description"]
            properties[field_name] = prop

        validators[collection] = {
            "$jsonSchema": {
                "bsonType": "object",
                "required": [name for name in spec["required"] if name != "id"],
                "properties": properties,
            }
        }
    return validators


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Generate document schemas for the transcription service collections."
    )
    parser.add_argument(
        "--backend",
        choices=["nosql", "mongo"],
        default="nosql",
        help="nosql: logical schema as JSON; mongo: $jsonSchema validators.",
    )
    parser.add_argument(
        "--collection",
        action="append",
        help="Only render the given collection (repeatable).",
    )
    args = parser.parse_args(argv)

    schema = generate_logical_schema()
    if args.collection:
        unknown = sorted(set(args.collection) - set(schema))
        if unknown:
            parser.error(f"unknown collection(s): {', '.join(unknown)}")
        schema = {name: spec for name, spec in schema.items() if name in args.collection}

    if args.backend == "mongo":
        print(json.dumps(render_mongo_validators(schema), indent=2, default=str))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
