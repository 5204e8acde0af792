"""Novum Type System.

Declared types: Integer, Float, String, Boolean, Void.
Sequences are fixed-length and homogeneous; they only arise from
sequence literals and are never written in a signature.

Each type has exactly one IR representation; ``type_of`` maps an IR
value back to the Novum type it represents.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from llvmlite import ir as llvm_ir

from novum.compiler.errors import SourceLocation, CompileError, unsupported_type


# ---------------------------------------------------------------------------
# Type Representations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NovumType:
    """Base type."""
    def __str__(self) -> str:
        return "Unknown"


@dataclass(frozen=True)
class PrimitiveType(NovumType):
    name: str = ""

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class SequenceType(NovumType):
    element_type: NovumType = field(default_factory=NovumType)
    length: int = 0

    def __str__(self) -> str:
        return f"[{self.element_type}; {self.length}]"


# ---------------------------------------------------------------------------
# Built-in Types
# ---------------------------------------------------------------------------

INTEGER = PrimitiveType("Integer")
FLOAT = PrimitiveType("Float")
STRING = PrimitiveType("String")
BOOLEAN = PrimitiveType("Boolean")
VOID = PrimitiveType("Void")

BUILTIN_TYPES: dict[str, PrimitiveType] = {
    "Integer": INTEGER,
    "Float": FLOAT,
    "String": STRING,
    "Boolean": BOOLEAN,
    "Void": VOID,
}

PARAMETER_TYPES = (INTEGER, FLOAT, STRING, BOOLEAN)
RETURN_TYPES = PARAMETER_TYPES + (VOID,)
NUMERIC_TYPES = (INTEGER, FLOAT)

I8 = llvm_ir.IntType(8)
I32 = llvm_ir.IntType(32)
I64 = llvm_ir.IntType(64)
I1 = llvm_ir.IntType(1)
DOUBLE = llvm_ir.DoubleType()
CHAR_PTR = I8.as_pointer()


def resolve_type_name(name: str, allow_void: bool = False,
                      location: Optional[SourceLocation] = None) -> PrimitiveType:
    """Resolve a declared type name from a signature."""
    allowed = RETURN_TYPES if allow_void else PARAMETER_TYPES
    typ = BUILTIN_TYPES.get(name)
    if typ is None or typ not in allowed:
        context = "a return type" if allow_void else "a parameter type"
        raise CompileError(unsupported_type(name, context, location))
    return typ


# ---------------------------------------------------------------------------
# IR mapping
# ---------------------------------------------------------------------------

def llvm_type(typ: NovumType) -> Any:
    """Map a Novum type to its llvmlite IR type."""
    if isinstance(typ, SequenceType):
        return llvm_ir.ArrayType(llvm_type(typ.element_type), typ.length).as_pointer()
    mapping = {
        INTEGER: I64,
        FLOAT: DOUBLE,
        STRING: CHAR_PTR,
        BOOLEAN: I1,
        VOID: llvm_ir.VoidType(),
    }
    if typ not in mapping:
        raise CompileError(unsupported_type(str(typ), "an IR type"))
    return mapping[typ]


def type_from_llvm(ir_type: Any) -> NovumType:
    """Map an llvmlite IR type back to the Novum type it represents."""
    if isinstance(ir_type, llvm_ir.VoidType):
        return VOID
    if isinstance(ir_type, llvm_ir.DoubleType):
        return FLOAT
    if isinstance(ir_type, llvm_ir.IntType):
        if ir_type.width == 64:
            return INTEGER
        if ir_type.width == 1:
            return BOOLEAN
    if isinstance(ir_type, llvm_ir.PointerType) and not ir_type.is_opaque:
        pointee = ir_type.pointee
        if pointee == I8:
            return STRING
        if isinstance(pointee, llvm_ir.ArrayType):
            return SequenceType(type_from_llvm(pointee.element), pointee.count)
    raise CompileError(unsupported_type(str(ir_type), "a value type"))


def type_of(value: Any) -> NovumType:
    """The Novum type of an emitted IR value."""
    return type_from_llvm(value.type)


def function_type(param_types: list[NovumType], return_type: NovumType) -> Any:
    return llvm_ir.FunctionType(llvm_type(return_type), [llvm_type(t) for t in param_types])
