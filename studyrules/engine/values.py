# studyrules/engine/values.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from .errors import ExpressionError


class ValueKind(Enum):
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class Value:
    """
    Result of an expression: number | string | boolean.
    Accessors raise ExpressionError on a kind mismatch.
    """
    kind: ValueKind
    raw: Union[float, str, bool]

    # --- constructors ---------------------------------------------------

    @classmethod
    def number(cls, v: float) -> "Value":
        return cls(ValueKind.NUMBER, float(v))

    @classmethod
    def string(cls, v: str) -> "Value":
        return cls(ValueKind.STRING, str(v))

    @classmethod
    def boolean(cls, v: bool) -> "Value":
        return cls(ValueKind.BOOLEAN, bool(v))

    @classmethod
    def of(cls, raw: Any) -> "Value":
        # bool first: bool is a subclass of int
        if isinstance(raw, bool):
            return cls.boolean(raw)
        if isinstance(raw, (int, float)):
            return cls.number(raw)
        if isinstance(raw, str):
            return cls.string(raw)
        raise ExpressionError(f"unsupported value type: {type(raw).__name__}")

    # --- kind checks ----------------------------------------------------

    @property
    def is_number(self) -> bool:
        return self.kind == ValueKind.NUMBER

    @property
    def is_string(self) -> bool:
        return self.kind == ValueKind.STRING

    @property
    def is_boolean(self) -> bool:
        return self.kind == ValueKind.BOOLEAN

    # --- accessors ------------------------------------------------------

    def as_number(self, what: str = "value") -> float:
        if self.kind != ValueKind.NUMBER:
            raise ExpressionError(f"{what} should be a number, got {self.kind.value}")
        return self.raw  # type: ignore[return-value]

    def as_str(self, what: str = "value") -> str:
        if self.kind != ValueKind.STRING:
            raise ExpressionError(f"{what} should be a string, got {self.kind.value}")
        return self.raw  # type: ignore[return-value]

    def as_bool(self, what: str = "value") -> bool:
        if self.kind != ValueKind.BOOLEAN:
            raise ExpressionError(f"{what} should be a boolean, got {self.kind.value}")
        return self.raw  # type: ignore[return-value]

    def truthy(self) -> Optional[bool]:
        """Numeric truthiness for logic operators; None for strings."""
        if self.kind == ValueKind.BOOLEAN:
            return bool(self.raw)
        if self.kind == ValueKind.NUMBER:
            return self.raw != 0
        return None

    def to_python(self) -> Union[float, str, bool]:
        return self.raw

    def __str__(self) -> str:
        if self.kind == ValueKind.BOOLEAN:
            return "true" if self.raw else "false"
        return str(self.raw)
