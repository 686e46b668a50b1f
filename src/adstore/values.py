"""Typed property values: a closed union of primitive types with string round-tripping."""

from __future__ import annotations

import base64
import binascii
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from adstore.errors import ValidationError

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


class PropertyType(str, Enum):
    STRING = "String"
    INT32 = "Int32"
    INT64 = "Int64"
    DOUBLE = "Double"
    BOOL = "Bool"
    GUID = "Guid"
    DATE = "Date"
    BINARY = "Binary"


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(text: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    raw = text.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return _to_utc(datetime.fromisoformat(raw))
    except ValueError as e:
        raise ValidationError(f"Invalid date value: {text!r}") from e


def _check_int(value: Any, lo: int, hi: int, type_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{type_name} value must be an int, got {type(value).__name__}")
    if value < lo or value > hi:
        raise ValidationError(f"{type_name} value out of range: {value}")
    return value


def _normalize(ptype: PropertyType, value: Any) -> Any:
    if value is None:
        raise ValidationError(f"{ptype.value} value must not be None")
    if ptype is PropertyType.STRING:
        if not isinstance(value, str):
            raise ValidationError(f"String value must be a str, got {type(value).__name__}")
        return value
    if ptype is PropertyType.INT32:
        return _check_int(value, INT32_MIN, INT32_MAX, "Int32")
    if ptype is PropertyType.INT64:
        return _check_int(value, INT64_MIN, INT64_MAX, "Int64")
    if ptype is PropertyType.DOUBLE:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"Double value must be a number, got {type(value).__name__}")
        value = float(value)
        if not math.isfinite(value):
            raise ValidationError(f"Double value must be finite, got {value!r}")
        return value
    if ptype is PropertyType.BOOL:
        if not isinstance(value, bool):
            raise ValidationError(f"Bool value must be a bool, got {type(value).__name__}")
        return value
    if ptype is PropertyType.GUID:
        if isinstance(value, uuid.UUID):
            return value
        if isinstance(value, str):
            try:
                return uuid.UUID(value)
            except ValueError as e:
                raise ValidationError(f"Invalid Guid value: {value!r}") from e
        raise ValidationError(f"Guid value must be a UUID, got {type(value).__name__}")
    if ptype is PropertyType.DATE:
        if not isinstance(value, datetime):
            raise ValidationError(f"Date value must be a datetime, got {type(value).__name__}")
        return _to_utc(value)
    if ptype is PropertyType.BINARY:
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise ValidationError(f"Binary value must be bytes, got {type(value).__name__}")
        return bytes(value)
    raise ValidationError(f"Unsupported property type: {ptype!r}")


@dataclass(frozen=True)
class PropertyValue:
    """A primitive value tagged with its PropertyType.

    The type is fixed at construction. ``serialization_value`` is the canonical
    string form and ``PropertyValue.parse`` is its strict inverse.
    """

    type: PropertyType
    value: Any

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", PropertyType(self.type))
        object.__setattr__(self, "value", _normalize(self.type, self.value))

    @classmethod
    def of(cls, value: Any) -> PropertyValue:
        """Build a value, inferring the type from the Python value."""
        if isinstance(value, PropertyValue):
            return value
        if isinstance(value, bool):
            return cls(PropertyType.BOOL, value)
        if isinstance(value, int):
            if INT32_MIN <= value <= INT32_MAX:
                return cls(PropertyType.INT32, value)
            return cls(PropertyType.INT64, value)
        if isinstance(value, float):
            return cls(PropertyType.DOUBLE, value)
        if isinstance(value, str):
            return cls(PropertyType.STRING, value)
        if isinstance(value, uuid.UUID):
            return cls(PropertyType.GUID, value)
        if isinstance(value, datetime):
            return cls(PropertyType.DATE, value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return cls(PropertyType.BINARY, value)
        if value is None:
            raise ValidationError("Cannot build a property value from None")
        raise ValidationError(f"Cannot infer property type for {type(value).__name__}")

    @classmethod
    def parse(cls, ptype: PropertyType | str, text: str) -> PropertyValue:
        """Parse the serialized string form of a value of the given type."""
        ptype = PropertyType(ptype)
        if text is None:
            raise ValidationError(f"{ptype.value} value must not be None")
        if ptype is PropertyType.STRING:
            return cls(ptype, text)
        if ptype in (PropertyType.INT32, PropertyType.INT64):
            try:
                return cls(ptype, int(text.strip()))
            except ValueError as e:
                raise ValidationError(f"Invalid {ptype.value} value: {text!r}") from e
        if ptype is PropertyType.DOUBLE:
            try:
                number = float(text)
            except ValueError as e:
                raise ValidationError(f"Invalid Double value: {text!r}") from e
            return cls(ptype, number)
        if ptype is PropertyType.BOOL:
            lowered = text.strip().lower()
            if lowered not in ("true", "false"):
                raise ValidationError(f"Invalid Bool value: {text!r}")
            return cls(ptype, lowered == "true")
        if ptype is PropertyType.GUID:
            return cls(ptype, text.strip())
        if ptype is PropertyType.DATE:
            return cls(ptype, parse_datetime(text))
        try:
            return cls(ptype, base64.b64decode(text, validate=True))
        except (binascii.Error, ValueError) as e:
            raise ValidationError(f"Invalid Binary value: {text[:32]!r}") from e

    @property
    def serialization_value(self) -> str:
        if self.type is PropertyType.STRING:
            return self.value
        if self.type in (PropertyType.INT32, PropertyType.INT64):
            return str(self.value)
        if self.type is PropertyType.DOUBLE:
            return repr(self.value)
        if self.type is PropertyType.BOOL:
            return "true" if self.value else "false"
        if self.type is PropertyType.GUID:
            return self.value.hex
        if self.type is PropertyType.DATE:
            return self.value.isoformat()
        return base64.b64encode(self.value).decode("ascii")

    # --- Typed accessors ---

    def to_str(self) -> str:
        return self.serialization_value

    def to_int(self) -> int:
        if self.type in (PropertyType.INT32, PropertyType.INT64):
            return self.value
        number = self.to_float()
        if not number.is_integer():
            raise ValidationError(f"{self.type.value} value {self.value!r} is not integral")
        return int(number)

    def to_float(self) -> float:
        if self.type in (PropertyType.INT32, PropertyType.INT64, PropertyType.DOUBLE):
            return float(self.value)
        if self.type is PropertyType.STRING:
            return PropertyValue.parse(PropertyType.DOUBLE, self.value).value
        raise ValidationError(f"Cannot convert {self.type.value} to a number")

    def to_bool(self) -> bool:
        if self.type is PropertyType.BOOL:
            return self.value
        if self.type is PropertyType.STRING:
            return PropertyValue.parse(PropertyType.BOOL, self.value).value
        raise ValidationError(f"Cannot convert {self.type.value} to Bool")

    def to_uuid(self) -> uuid.UUID:
        if self.type is PropertyType.GUID:
            return self.value
        if self.type is PropertyType.STRING:
            return PropertyValue.parse(PropertyType.GUID, self.value).value
        raise ValidationError(f"Cannot convert {self.type.value} to Guid")

    def to_datetime(self) -> datetime:
        if self.type is PropertyType.DATE:
            return self.value
        if self.type is PropertyType.STRING:
            return parse_datetime(self.value)
        raise ValidationError(f"Cannot convert {self.type.value} to Date")

    def to_bytes(self) -> bytes:
        if self.type is PropertyType.BINARY:
            return self.value
        if self.type is PropertyType.STRING:
            return PropertyValue.parse(PropertyType.BINARY, self.value).value
        raise ValidationError(f"Cannot convert {self.type.value} to Binary")

    def __str__(self) -> str:
        return self.serialization_value
