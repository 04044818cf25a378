"""Conversion of DynamoDB attribute-value items into documents for the target."""

from __future__ import annotations

import decimal
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from bson.decimal128 import Decimal128

CONVERT_TYPE_RAW = "raw"
CONVERT_TYPE_CHANGE = "change"
CONVERT_TYPE_SAME = "same"

# Field order of a DynamoDB AttributeValue; when several fields are set the
# type converter keeps the value of the last one in this order.
_FIELD_ORDER = ("B", "BOOL", "BS", "L", "M", "N", "NS", "NULL", "S", "SS")
_BINARY = (bytes, bytearray, memoryview)


class ConversionError(ValueError):
    """Raised when an item cannot be converted."""


@dataclass
class RawData:
    """A converted value together with an estimate of its size in bytes."""

    size: int
    data: Any


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple, dict, bytes, bytearray, memoryview)):
        return len(value) == 0
    return False


def _require_str(field: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ConversionError(f"attribute type[{field}] expects a string, got {type(value).__name__}")
    return value


def _require_bytes(field: str, value: Any) -> bytes:
    if not isinstance(value, _BINARY):
        raise ConversionError(f"attribute type[{field}] expects bytes, got {type(value).__name__}")
    return bytes(value)


def _require_list(field: str, value: Any) -> Sequence:
    if isinstance(value, (str, bytes, bytearray, memoryview, Mapping)) or not isinstance(value, Sequence):
        raise ConversionError(f"attribute type[{field}] expects a list, got {type(value).__name__}")
    return value


def parse_decimal(text: str) -> Decimal128:
    """Parse a DynamoDB number, falling back to float precision when it does not fit."""
    try:
        return Decimal128(text)
    except (decimal.DecimalException, ValueError, TypeError):
        try:
            approximation = float(text)
        except ValueError as exc:
            raise ConversionError(f"convert N[{text}] to decimal128 and float64 both failed") from exc
        return Decimal128(repr(approximation))


class Converter(ABC):
    """Turns one DynamoDB item into a document for the target."""

    @abstractmethod
    def run(self, item: Mapping[str, Any]) -> Any:
        """Convert ``item`` or raise :class:`ConversionError`."""


class _TreeConverter(Converter):
    """Shared walk over attribute values; subclasses decide how fields combine."""

    def run(self, item: Mapping[str, Any]) -> RawData:
        if not isinstance(item, Mapping):
            raise ConversionError("parse failed, input isn't a mapping")
        if not item:
            raise ConversionError("parse failed, return nil")
        return self._convert_map(item)

    def _convert_map(self, item: Mapping[str, Any]) -> RawData:
        size = 0
        document: dict[str, Any] = {}
        for name, attribute in item.items():
            if attribute is None:
                continue
            converted = self._convert_attribute(attribute)
            size += _byte_len(name) + converted.size
            document[name] = converted.data
        return RawData(size, document)

    def _convert_attribute(self, attribute: Any) -> RawData:
        if not isinstance(attribute, Mapping):
            raise ConversionError(f"attribute value must be a mapping, got {type(attribute).__name__}")
        unknown = set(attribute) - set(_FIELD_ORDER)
        if unknown:
            raise ConversionError(f"unknown attribute type{sorted(unknown)}")
        fields = [
            (field, self._convert_field(field, attribute[field]))
            for field in _FIELD_ORDER
            if field in attribute and not _is_empty(attribute[field])
        ]
        return self._combine(fields)

    def _convert_field(self, field: str, value: Any) -> RawData:
        if field == "S":
            text = _require_str(field, value)
            return RawData(_byte_len(text), text)
        if field == "N":
            text = _require_str(field, value)
            return RawData(_byte_len(text), self._number(text))
        if field == "B":
            data = _require_bytes(field, value)
            return RawData(len(data), data)
        if field == "BS":
            items = [_require_bytes(field, element) for element in _require_list(field, value)]
            return RawData(sum(len(element) for element in items), items)
        if field == "SS":
            items = [_require_str(field, element) for element in _require_list(field, value)]
            return RawData(sum(_byte_len(element) for element in items), items)
        if field == "NS":
            items = [_require_str(field, element) for element in _require_list(field, value)]
            return RawData(
                sum(_byte_len(element) for element in items),
                [self._number(element) for element in items],
            )
        if field in ("BOOL", "NULL"):
            if not isinstance(value, bool):
                raise ConversionError(f"attribute type[{field}] expects a bool, got {type(value).__name__}")
            return RawData(1, value)
        if field == "L":
            converted = [self._convert_attribute(element) for element in _require_list(field, value)]
            return RawData(sum(element.size for element in converted), [element.data for element in converted])
        if not isinstance(value, Mapping):
            raise ConversionError(f"attribute type[M] expects a mapping, got {type(value).__name__}")
        return self._convert_map(value)

    @abstractmethod
    def _number(self, text: str) -> Any:
        """Represent a DynamoDB number."""

    @abstractmethod
    def _combine(self, fields: list[tuple[str, RawData]]) -> RawData:
        """Merge the set fields of one attribute value."""


class RawConverter(_TreeConverter):
    """Keeps the DynamoDB type tags: ``{"N": "1"}`` stays ``{"N": "1"}``."""

    def run(self, item: Mapping[str, Any]) -> RawData:
        return super().run(item)

    def _number(self, text: str) -> str:
        return text

    def _combine(self, fields: list[tuple[str, RawData]]) -> RawData:
        size = sum(_byte_len(name) + value.size for name, value in fields)
        return RawData(size, {name: value.data for name, value in fields})


class TypeConverter(_TreeConverter):
    """Drops the type tags and maps each value to a native type (numbers to Decimal128)."""

    def run(self, item: Mapping[str, Any]) -> RawData:
        return super().run(item)

    def _number(self, text: str) -> Decimal128:
        return parse_decimal(text)

    def _combine(self, fields: list[tuple[str, RawData]]) -> RawData:
        if len(fields) > 2:
            raise ConversionError("illegal struct field number")
        size = sum(value.size for _, value in fields)
        data = fields[-1][1].data if fields else None
        return RawData(size, data)


class SameConverter(Converter):
    """Passes the item through untouched."""

    def run(self, item: Mapping[str, Any]) -> Mapping[str, Any]:
        return item


def new_converter(kind: str) -> Converter:
    """Build the converter registered under ``kind``."""
    converters = {
        CONVERT_TYPE_RAW: RawConverter,
        CONVERT_TYPE_CHANGE: TypeConverter,
        CONVERT_TYPE_SAME: SameConverter,
    }
    try:
        return converters[kind]()
    except KeyError:
        raise ConversionError(f"unknown converter type[{kind}]") from None