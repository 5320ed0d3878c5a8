"""Field access for caller records: dicts, dataclasses, pydantic models or plain objects."""

import dataclasses
from collections.abc import Mapping, MutableMapping
from typing import Any, List


def field_names(record: Any) -> List[str]:
    """List the field names of a record (or record type) in declaration order."""
    if isinstance(record, Mapping):
        return list(record.keys())

    if dataclasses.is_dataclass(record):
        return [f.name for f in dataclasses.fields(record)]

    record_type = record if isinstance(record, type) else type(record)
    model_fields = getattr(record_type, "model_fields", None)
    if isinstance(model_fields, dict):
        return list(model_fields.keys())

    if isinstance(record, type):
        annotations = getattr(record, "__annotations__", {})
        return [name for name in annotations if not name.startswith("_")]

    return [name for name in vars(record) if not name.startswith("_")]


def get_value(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def set_value(record: Any, name: str, value: Any) -> None:
    if isinstance(record, MutableMapping):
        record[name] = value
    else:
        setattr(record, name, value)
