"""Render driver values as plain text, one formatter per kind of value."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Protocol, Sequence, runtime_checkable


@runtime_checkable
class ValueFormatter(Protocol):
    """Converts one kind of value to text."""

    kind: str

    def accepts(self, value: object) -> bool: ...

    def format(self, value: object) -> str: ...


class NullFormatter:
    kind = "null"

    def accepts(self, value: object) -> bool:
        return value is None

    def format(self, value: object) -> str:
        return ""


class BooleanFormatter:
    kind = "boolean"

    def accepts(self, value: object) -> bool:
        return isinstance(value, bool)

    def format(self, value: object) -> str:
        return "true" if value else "false"


class TimestampFormatter:
    """Dates and midnight timestamps render as dates; timezone is dropped."""

    kind = "timestamp"

    def accepts(self, value: object) -> bool:
        return isinstance(value, (dt.date, dt.time))

    def format(self, value: object) -> str:
        if isinstance(value, dt.datetime):
            if value.time() == dt.time(0, 0):
                return value.strftime("%Y-%m-%d")
            return value.strftime("%Y-%m-%d %H:%M:%S")
        if isinstance(value, dt.date):
            return value.strftime("%Y-%m-%d")
        assert isinstance(value, dt.time)
        return value.strftime("%H:%M:%S")


class NumericFormatter:
    kind = "numeric"

    def accepts(self, value: object) -> bool:
        return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)

    def format(self, value: object) -> str:
        if isinstance(value, float):
            return f"{value:g}"
        if isinstance(value, Decimal):
            return format(value, "f")
        return str(value)


class BinaryFormatter:
    """UTF-8 text when the bytes decode cleanly, otherwise hex."""

    kind = "binary"

    def accepts(self, value: object) -> bool:
        return isinstance(value, (bytes, bytearray, memoryview))

    def format(self, value: object) -> str:
        raw = bytes(value)  # type: ignore[arg-type]
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            return "\\x" + raw.hex()


class TextFormatter:
    kind = "text"

    def accepts(self, value: object) -> bool:
        return True

    def format(self, value: object) -> str:
        return value if isinstance(value, str) else str(value)


# Order matters: bool is an int subclass and datetime a date subclass.
DEFAULT_FORMATTERS: tuple[ValueFormatter, ...] = (
    NullFormatter(),
    BooleanFormatter(),
    TimestampFormatter(),
    NumericFormatter(),
    BinaryFormatter(),
    TextFormatter(),
)


def formatter_for(
    value: object,
    formatters: Sequence[ValueFormatter] = DEFAULT_FORMATTERS,
) -> ValueFormatter:
    for formatter in formatters:
        if formatter.accepts(value):
            return formatter
    return TextFormatter()


def format_value(value: object, formatters: Sequence[ValueFormatter] = DEFAULT_FORMATTERS) -> str:
    """Text form of a single column value."""

    return formatter_for(value, formatters).format(value)


__all__ = [
    "BinaryFormatter",
    "BooleanFormatter",
    "DEFAULT_FORMATTERS",
    "NullFormatter",
    "NumericFormatter",
    "TextFormatter",
    "TimestampFormatter",
    "ValueFormatter",
    "format_value",
    "formatter_for",
]
