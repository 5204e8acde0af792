"""Structured error objects for the Novum compiler.

Every compile-time failure is a NovumError carrying its kind, a message,
an optional source location and a details dict naming the offending
symbol, operator or function. CompileError is the only exception the
pipeline raises; nothing inside the pipeline catches it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    LEXICAL_ERROR = "lexical_error"
    SYNTAX_ERROR = "syntax_error"
    UNDEFINED_SYMBOL = "undefined_symbol"
    ARITY_MISMATCH = "arity_mismatch"
    TYPE_MISMATCH = "type_mismatch"
    UNSUPPORTED_TYPE = "unsupported_type"
    MISSING_OVERLOAD = "missing_overload"
    DUPLICATE_DEFINITION = "duplicate_definition"
    VERIFICATION_ERROR = "verification_error"
    INTERNAL_ERROR = "internal_error"


@dataclass
class SourceLocation:
    line: int
    column: int
    file: str = "<stdin>"

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


@dataclass
class NovumError:
    kind: ErrorKind
    message: str
    location: Optional[SourceLocation] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.location:
            d["location"] = {
                "file": self.location.file,
                "line": self.location.line,
                "column": self.location.column,
            }
        if self.details:
            d["details"] = self.details
        return d

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def __str__(self) -> str:
        loc = f" at {self.location}" if self.location else ""
        return f"[{self.kind.value}]{loc}: {self.message}"


def lexical_error(
    message: str,
    location: Optional[SourceLocation] = None,
) -> NovumError:
    return NovumError(
        kind=ErrorKind.LEXICAL_ERROR,
        message=message,
        location=location,
    )


def syntax_error(
    message: str,
    location: Optional[SourceLocation] = None,
) -> NovumError:
    return NovumError(
        kind=ErrorKind.SYNTAX_ERROR,
        message=message,
        location=location,
    )


def undefined_symbol(
    name: str,
    what: str = "variable",
    location: Optional[SourceLocation] = None,
) -> NovumError:
    return NovumError(
        kind=ErrorKind.UNDEFINED_SYMBOL,
        message=f"Undefined {what} '{name}'",
        location=location,
        details={"name": name, "symbol_kind": what},
    )


def arity_mismatch(
    callee: str,
    expected: int,
    actual: int,
    location: Optional[SourceLocation] = None,
) -> NovumError:
    return NovumError(
        kind=ErrorKind.ARITY_MISMATCH,
        message=f"Procedure '{callee}' expects {expected} argument(s), got {actual}",
        location=location,
        details={"callee": callee, "expected": expected, "actual": actual},
    )


def type_mismatch(
    message: str,
    location: Optional[SourceLocation] = None,
    **details: Any,
) -> NovumError:
    return NovumError(
        kind=ErrorKind.TYPE_MISMATCH,
        message=message,
        location=location,
        details=details,
    )


def unsupported_type(
    type_name: str,
    context: str,
    location: Optional[SourceLocation] = None,
) -> NovumError:
    return NovumError(
        kind=ErrorKind.UNSUPPORTED_TYPE,
        message=f"Type '{type_name}' is not supported as {context}",
        location=location,
        details={"type": type_name, "context": context},
    )


def missing_overload(
    function_name: str,
    operand_types: list[str],
    location: Optional[SourceLocation] = None,
) -> NovumError:
    types = ", ".join(operand_types)
    return NovumError(
        kind=ErrorKind.MISSING_OVERLOAD,
        message=f"No operator function '{function_name}' accepting ({types})",
        location=location,
        details={"function": function_name, "operand_types": operand_types},
    )


def duplicate_definition(
    name: str,
    location: Optional[SourceLocation] = None,
) -> NovumError:
    return NovumError(
        kind=ErrorKind.DUPLICATE_DEFINITION,
        message=f"Procedure '{name}' already has a body",
        location=location,
        details={"function": name},
    )


def verification_error(
    function_name: str,
    reason: str,
    location: Optional[SourceLocation] = None,
) -> NovumError:
    return NovumError(
        kind=ErrorKind.VERIFICATION_ERROR,
        message=f"Error occurred while verifying procedure '{function_name}': {reason}",
        location=location,
        details={"function": function_name, "reason": reason},
    )


def internal_error(
    message: str,
    location: Optional[SourceLocation] = None,
) -> NovumError:
    return NovumError(
        kind=ErrorKind.INTERNAL_ERROR,
        message=message,
        location=location,
    )


class CompileError(Exception):
    """Exception wrapping one or more NovumErrors."""

    def __init__(self, errors: list[NovumError] | NovumError):
        if isinstance(errors, NovumError):
            errors = [errors]
        self.errors = errors
        super().__init__(self._format())

    @property
    def kind(self) -> ErrorKind:
        return self.errors[0].kind

    def _format(self) -> str:
        return "\n".join(str(e) for e in self.errors)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps([e.to_dict() for e in self.errors], indent=indent)
