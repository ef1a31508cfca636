"""Canonical empty values and write-time parsing per field type."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping


class _Missing:
    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:  # pragma: no cover - simple formatting
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class FieldType(str, Enum):
    LINK = "link"
    OPTIONS = "options"
    ARRAY = "array"
    STRING = "string"
    BARCODEQR = "barcodeqr"
    FORMULA = "formula"
    LONGFORM = "longform"
    NUMBER = "number"
    DATETIME = "datetime"
    ATTACHMENT = "attachment"
    BOOLEAN = "boolean"
    AUTO = "auto"
    JSON = "json"


# Sentinel for "no substitute configured"; the value passes through.
_KEEP: Any = object()


@dataclass(frozen=True)
class FieldTransform:
    on_empty_string: Any = _KEEP
    on_null: Any = _KEEP
    on_missing: Any = _KEEP
    literals: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    parse: Callable[[Any], Any] | None = None


def parse_link(value: Any) -> Any:
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return [el.get("_id") if isinstance(el, dict) and el.get("_id") else el for el in value]
    if isinstance(value, str):
        return [value]
    return value


_FLOAT_PREFIX = re.compile(r"^[+-]?(?:Infinity|(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?)")


def parse_number(value: Any) -> float:
    """Coerce to float the way a lenient form input does: read the longest numeric prefix."""
    if isinstance(value, bool):
        return math.nan
    if isinstance(value, (int, float)):
        return float(value)
    match = _FLOAT_PREFIX.match(str(value).lstrip())
    if not match:
        return math.nan
    return float(match.group(0).replace("Infinity", "inf"))


def parse_datetime(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
    if isinstance(value, date):
        return parse_datetime(datetime.combine(value, time.min, tzinfo=timezone.utc))
    return value


def parse_json(value: Any) -> Any:
    if value == "":
        return MISSING
    if not isinstance(value, (str, bytes, bytearray)):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def _text() -> FieldTransform:
    return FieldTransform(on_empty_string="", on_null="", on_missing=MISSING)


def _list_valued(parse: Callable[[Any], Any] | None = None) -> FieldTransform:
    return FieldTransform(on_empty_string=[], on_null=[], on_missing=MISSING, parse=parse)


def _nullable(parse: Callable[[Any], Any] | None = None, literals: dict | None = None) -> FieldTransform:
    return FieldTransform(
        on_empty_string=None,
        on_null=None,
        on_missing=MISSING,
        literals=MappingProxyType(dict(literals or {})),
        parse=parse,
    )


TYPE_TRANSFORMS: Mapping[FieldType, FieldTransform] = MappingProxyType(
    {
        FieldType.LINK: _list_valued(parse_link),
        FieldType.OPTIONS: _nullable(),
        FieldType.ARRAY: _list_valued(),
        FieldType.STRING: _text(),
        FieldType.BARCODEQR: _text(),
        FieldType.FORMULA: _text(),
        FieldType.LONGFORM: _text(),
        FieldType.NUMBER: _nullable(parse_number),
        FieldType.DATETIME: _nullable(parse_datetime),
        FieldType.ATTACHMENT: _list_valued(),
        FieldType.BOOLEAN: _nullable(literals={"true": True, "false": False}),
        FieldType.AUTO: FieldTransform(parse=lambda _value: MISSING),
        FieldType.JSON: FieldTransform(parse=parse_json),
    }
)


def _copy_default(value: Any) -> Any:
    return list(value) if isinstance(value, list) else value


def coerce_value(field_type: FieldType | str, value: Any = MISSING) -> Any:
    """Return the stored form of ``value`` for a column of ``field_type``.

    Unknown field types pass values through untouched. ``MISSING`` stands for an
    absent value and may be returned to signal the column should be dropped.
    """
    try:
        transform = TYPE_TRANSFORMS[FieldType(field_type)]
    except ValueError:
        return value
    if value is MISSING:
        substitute = transform.on_missing
    elif value is None:
        substitute = transform.on_null
    elif isinstance(value, str) and value == "":
        substitute = transform.on_empty_string
    else:
        substitute = _KEEP
    if substitute is not _KEEP:
        return _copy_default(substitute)
    if isinstance(value, str) and value in transform.literals:
        return transform.literals[value]
    if transform.parse is not None:
        return transform.parse(value)
    return value


def coerce_row(schema: Mapping[str, dict], row: dict) -> dict:
    """Apply the field table to every column a table schema declares."""
    out = dict(row)
    for column, column_def in (schema or {}).items():
        field_type = (column_def or {}).get("type")
        if not field_type:
            continue
        value = coerce_value(field_type, row.get(column, MISSING))
        if value is MISSING:
            out.pop(column, None)
        else:
            out[column] = value
    return out
