"""Novum AST node definitions.

The parser builds these once; the code generator reads each node exactly
once. Expressions and statements form a closed set of variants, lowered
by the generator's isinstance dispatch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from novum.compiler.errors import SourceLocation


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------

@dataclass
class Expr:
    location: Optional[SourceLocation] = None


@dataclass
class StringLiteral(Expr):
    value: str = ""


@dataclass
class NumberLiteral(Expr):
    value: Union[int, float] = 0
    is_integer: bool = True


@dataclass
class BoolLiteral(Expr):
    value: bool = False


@dataclass
class SequenceLiteral(Expr):
    """Fixed-length homogeneous sequence:  [1, 2, 3]"""
    elements: list[Expr] = field(default_factory=list)


@dataclass
class Variable(Expr):
    name: str = ""


@dataclass
class Binary(Expr):
    op: str = ""
    lhs: Expr = field(default_factory=Expr)
    rhs: Expr = field(default_factory=Expr)


@dataclass
class Unary(Expr):
    op: str = ""
    operand: Expr = field(default_factory=Expr)


@dataclass
class Call(Expr):
    callee: str = ""
    args: list[Expr] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

@dataclass
class Block:
    statements: list[Statement] = field(default_factory=list)
    location: Optional[SourceLocation] = None


@dataclass
class ElseIf:
    condition: Expr = field(default_factory=Expr)
    block: Block = field(default_factory=Block)
    location: Optional[SourceLocation] = None


@dataclass
class If:
    condition: Expr = field(default_factory=Expr)
    then_block: Block = field(default_factory=Block)
    else_ifs: list[ElseIf] = field(default_factory=list)
    else_block: Optional[Block] = None
    location: Optional[SourceLocation] = None


@dataclass
class Return:
    value: Optional[Expr] = None
    location: Optional[SourceLocation] = None


@dataclass
class Loop:
    """``for`` loop. For-in loops iterate ``condition`` as a sequence;
    while-style loops re-evaluate it as a Boolean each iteration."""
    condition: Expr = field(default_factory=Expr)
    body: Block = field(default_factory=Block)
    is_for_in: bool = False
    index_name: str = ""
    element_name: str = ""
    location: Optional[SourceLocation] = None


@dataclass
class Binding:
    """Block-scoped name binding:  name = expr"""
    name: str = ""
    value: Expr = field(default_factory=Expr)
    location: Optional[SourceLocation] = None


Statement = Union[Expr, If, Return, Loop, Binding, Block]


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------

@dataclass
class Parameter:
    name: str
    type_name: str
    location: Optional[SourceLocation] = None


@dataclass
class Prototype:
    name: str = ""
    params: list[Parameter] = field(default_factory=list)
    return_type: str = "Void"
    location: Optional[SourceLocation] = None


@dataclass
class Function:
    proto: Prototype = field(default_factory=Prototype)
    body: Block = field(default_factory=Block)
    location: Optional[SourceLocation] = None


@dataclass
class Extern:
    proto: Prototype = field(default_factory=Prototype)
    location: Optional[SourceLocation] = None


Item = Union[Function, Extern, Statement]


# ---------------------------------------------------------------------------
# Program (root node)
# ---------------------------------------------------------------------------

@dataclass
class Program:
    items: list[Item] = field(default_factory=list)
    filename: str = "<stdin>"
