"""Novum Code Generator — AST → LLVM IR via llvmlite.

One ``CodeGenerator`` is the whole emission context of one compilation:
the module, the builder cursor, the lexical symbol scope and the string
table. Structural verification and the optimization pipeline belong to
the ``Backend`` it writes into.

Every contract violation raises ``CompileError`` at the point of
detection; nothing in here catches it.
"""

from __future__ import annotations

import logging
from typing import Optional, Any

from llvmlite import ir as llvm_ir

from novum.config import CompilerConfig
from novum.compiler.ast_nodes import (
    Expr, StringLiteral, NumberLiteral, BoolLiteral, SequenceLiteral,
    Variable, Binary, Unary, Call,
    Block, If, Return, Loop, Binding, Statement,
    Prototype, Function,
)
from novum.compiler.backend import Backend
from novum.compiler.errors import (
    SourceLocation, CompileError,
    undefined_symbol, arity_mismatch, type_mismatch, unsupported_type,
    missing_overload, duplicate_definition, verification_error, internal_error,
)
from novum.compiler.scope import SymbolScope
from novum.compiler.types import (
    NovumType, SequenceType,
    INTEGER, FLOAT, STRING, BOOLEAN, VOID, NUMERIC_TYPES, PARAMETER_TYPES,
    I8, I32, I64, I1, DOUBLE, CHAR_PTR,
    resolve_type_name, type_from_llvm, type_of, function_type,
)

logger = logging.getLogger(__name__)

TOPLEVEL_FUNCTION = "__toplevel"
DIVISION_BY_ZERO_MESSAGE = "runtime error: division by zero"

NUMERIC_OPERATORS = frozenset(["+", "-", "*", "/", "<", ">", "==", "!="])
EQUALITY_OPERATORS = frozenset(["==", "!="])

_INTEGER_ARITHMETIC = {"+": "add", "-": "sub", "*": "mul", "/": "sdiv"}
_FLOAT_ARITHMETIC = {"+": "fadd", "-": "fsub", "*": "fmul", "/": "fdiv"}

_INT64_MIN = -(2 ** 63)
_INT64_MAX = 2 ** 63 - 1


def _supports_builtin(typ: NovumType, op: str) -> bool:
    if typ in NUMERIC_TYPES:
        return op in NUMERIC_OPERATORS
    if typ in (STRING, BOOLEAN):
        return op in EQUALITY_OPERATORS
    return False


class CodeGenerator:
    """Lowers declarations, function bodies and top-level statements."""

    def __init__(self, backend: Optional[Backend] = None,
                 config: Optional[CompilerConfig] = None):
        if config is None:
            config = backend.config if backend is not None else CompilerConfig()
        self.config = config
        self.backend = backend or Backend(config.module_name, config)
        self.module = self.backend.module
        self.builder: Optional[llvm_ir.IRBuilder] = None
        self.scope = SymbolScope()
        self._strings: dict[str, Any] = {}
        self._function: Optional[llvm_ir.Function] = None
        self._return_type: NovumType = VOID

    # -------------------------------------------------------------------
    # Declarations
    # -------------------------------------------------------------------

    def lookup_function(self, name: str) -> Optional[llvm_ir.Function]:
        value = self.module.globals.get(name)
        if isinstance(value, llvm_ir.Function):
            return value
        return None

    def declare(self, proto: Prototype) -> llvm_ir.Function:
        """Get or create the module-level function for *proto*."""
        param_types = [resolve_type_name(p.type_name, location=p.location or proto.location)
                       for p in proto.params]
        return_type = resolve_type_name(proto.return_type, allow_void=True,
                                        location=proto.location)
        fnty = function_type(param_types, return_type)

        existing = self.module.globals.get(proto.name)
        if existing is not None:
            if not isinstance(existing, llvm_ir.Function) or existing.ftype != fnty:
                raise CompileError(type_mismatch(
                    f"Conflicting declaration of '{proto.name}'",
                    proto.location,
                    function=proto.name,
                    declared=str(existing.ftype if isinstance(existing, llvm_ir.Function)
                                 else existing.type),
                    found=str(fnty),
                ))
            return existing

        fn = llvm_ir.Function(self.module, fnty, name=proto.name)
        for arg, param in zip(fn.args, proto.params):
            arg.name = param.name
        logger.debug("declared %s%s", proto.name, fnty)
        return fn

    def _runtime_function(self, name: str, fnty: llvm_ir.FunctionType) -> llvm_ir.Function:
        existing = self.module.globals.get(name)
        if existing is None:
            fn = llvm_ir.Function(self.module, fnty, name=name)
            logger.debug("declared runtime function %s", name)
            return fn
        if not isinstance(existing, llvm_ir.Function) or existing.ftype != fnty:
            raise CompileError(type_mismatch(
                f"'{name}' is declared with a signature the runtime cannot use",
                function=name,
                expected=str(fnty),
            ))
        return existing

    # -------------------------------------------------------------------
    # Function bodies
    # -------------------------------------------------------------------

    def lower_function(self, func: Function) -> llvm_ir.Function:
        """Lower one function definition and finalize it."""
        proto = func.proto
        fn = self.declare(proto)
        if not fn.is_declaration:
            raise CompileError(duplicate_definition(proto.name, func.location or proto.location))

        params = {p.name: arg for p, arg in zip(proto.params, fn.args)}
        self._check_block(func.body, set(params))

        self._begin(fn, params)
        if not self._lower_block(func.body):
            self.backend.remove_function(fn)
            raise CompileError(verification_error(
                proto.name, "control reaches the end of the body without a return",
                func.location or proto.location,
            ))
        self._finish(fn, func.location or proto.location)
        return fn

    def lower_toplevel(self, statements: list[Statement]) -> Optional[llvm_ir.Function]:
        """Collect top-level statements into the synthesized ``__toplevel``."""
        if not statements:
            return None
        body = Block(statements=list(statements))
        location = getattr(statements[0], "location", None)

        fn = self.declare(Prototype(name=TOPLEVEL_FUNCTION, location=location))
        if not fn.is_declaration:
            raise CompileError(duplicate_definition(TOPLEVEL_FUNCTION, location))
        self._check_block(body, set())

        self._begin(fn, {})
        if not self._lower_block(body):
            self.builder.ret_void()
        self._finish(fn, location)
        return fn

    def _begin(self, fn: llvm_ir.Function, params: dict[str, Any]) -> None:
        self._function = fn
        self._return_type = type_from_llvm(fn.ftype.return_type)
        self.builder = llvm_ir.IRBuilder(fn.append_basic_block(name="entry"))
        self.scope = SymbolScope()
        for name, value in params.items():
            self.scope.define(name, value)

    def _finish(self, fn: llvm_ir.Function, location: Optional[SourceLocation]) -> None:
        problem = self.backend.verify_function(fn)
        if problem is not None:
            self.backend.remove_function(fn)
            raise CompileError(verification_error(fn.name, problem, location))

        if self.config.optimization_enabled():
            self.backend.schedule_optimization(fn)
        else:
            logger.debug("optimization of %s suppressed", fn.name)
        logger.debug("finalized %s (%d blocks)", fn.name, len(fn.blocks))

    # -------------------------------------------------------------------
    # Name pre-check
    # -------------------------------------------------------------------

    def _check_block(self, block: Block, visible: set[str]) -> None:
        local = set(visible)
        for stmt in block.statements:
            self._check_node(stmt, local)

    def _check_node(self, node: Any, visible: set[str]) -> None:
        if isinstance(node, Block):
            self._check_block(node, visible)
        elif isinstance(node, Binding):
            self._check_node(node.value, visible)
            visible.add(node.name)
        elif isinstance(node, Return):
            if node.value is not None:
                self._check_node(node.value, visible)
        elif isinstance(node, If):
            self._check_node(node.condition, visible)
            self._check_block(node.then_block, visible)
            for clause in node.else_ifs:
                self._check_node(clause.condition, visible)
                self._check_block(clause.block, visible)
            if node.else_block is not None:
                self._check_block(node.else_block, visible)
        elif isinstance(node, Loop):
            self._check_node(node.condition, visible)
            names = {n for n in (node.index_name, node.element_name) if n}
            self._check_block(node.body, visible | names)
        elif isinstance(node, Variable):
            if node.name not in visible:
                raise CompileError(undefined_symbol(node.name, "variable", node.location))
        elif isinstance(node, Call):
            if self.lookup_function(node.callee) is None:
                raise CompileError(undefined_symbol(node.callee, "procedure", node.location))
            for arg in node.args:
                self._check_node(arg, visible)
        elif isinstance(node, Binary):
            self._check_node(node.lhs, visible)
            self._check_node(node.rhs, visible)
        elif isinstance(node, Unary):
            self._check_node(node.operand, visible)
        elif isinstance(node, SequenceLiteral):
            for element in node.elements:
                self._check_node(element, visible)

    # -------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------

    def _lower_block(self, block: Block) -> bool:
        """Lower *block* in its own scope frame. Returns True when the
        current IR block ends in a terminator afterwards."""
        with self.scope.frame():
            return self._lower_statements(block.statements)

    def _lower_statements(self, statements: list[Statement]) -> bool:
        for i, stmt in enumerate(statements):
            if self.builder.block.is_terminated:
                logger.warning("%s: skipping %d unreachable statement(s) in '%s'",
                               getattr(stmt, "location", None) or "?",
                               len(statements) - i, self._function.name)
                break
            self._lower_statement(stmt)
        return self.builder.block.is_terminated

    def _lower_statement(self, stmt: Statement) -> None:
        if isinstance(stmt, Return):
            self._lower_return(stmt)
        elif isinstance(stmt, If):
            self._lower_if(stmt)
        elif isinstance(stmt, Loop):
            if stmt.is_for_in:
                self._lower_for_in(stmt)
            else:
                self._lower_while(stmt)
        elif isinstance(stmt, Binding):
            value = self._lower_operand(stmt.value, f"binding '{stmt.name}'")
            self.scope.define(stmt.name, value)
        elif isinstance(stmt, Block):
            self._lower_block(stmt)
        elif isinstance(stmt, Expr):
            self._lower_expr(stmt)
        else:
            raise CompileError(internal_error(f"Cannot lower statement {type(stmt).__name__}"))

    def _lower_return(self, stmt: Return) -> None:
        name = self._function.name
        if stmt.value is None:
            if self._return_type != VOID:
                raise CompileError(type_mismatch(
                    f"Procedure '{name}' must return {self._return_type}",
                    stmt.location, function=name, expected=str(self._return_type), actual="Void",
                ))
            self.builder.ret_void()
            return

        value = self._lower_expr(stmt.value)
        actual = type_of(value)
        if actual != self._return_type:
            raise CompileError(type_mismatch(
                f"Procedure '{name}' returns {self._return_type}, not {actual}",
                stmt.location, function=name, expected=str(self._return_type), actual=str(actual),
            ))
        if actual == VOID:
            self.builder.ret_void()
        else:
            self.builder.ret(value)

    def _lower_condition(self, expr: Expr, construct: str) -> Any:
        value = self._lower_operand(expr, f"the condition of '{construct}'")
        actual = type_of(value)
        if actual != BOOLEAN:
            raise CompileError(type_mismatch(
                f"Condition of '{construct}' must be Boolean, got {actual}",
                expr.location, construct=construct, actual=str(actual),
            ))
        return value

    def _lower_if(self, stmt: If) -> None:
        fn = self._function
        clauses = [(stmt.condition, stmt.then_block)]
        clauses += [(clause.condition, clause.block) for clause in stmt.else_ifs]

        open_ends: list[llvm_ir.Block] = []
        else_bb: Optional[llvm_ir.Block] = None
        for i, (condition, block) in enumerate(clauses):
            cond = self._lower_condition(condition, "if")
            then_bb = fn.append_basic_block(name="then" if i == 0 else "elif.then")
            if i == len(clauses) - 1:
                else_bb = next_bb = fn.append_basic_block(name="else")
            else:
                next_bb = fn.append_basic_block(name="elif")
            self.builder.cbranch(cond, then_bb, next_bb)

            self.builder.position_at_end(then_bb)
            if not self._lower_block(block):
                open_ends.append(self.builder.block)
            self.builder.position_at_end(next_bb)

        # The else block always exists; an absent else is an empty one.
        if stmt.else_block is None or not self._lower_block(stmt.else_block):
            open_ends.append(self.builder.block)

        exit_bb = fn.append_basic_block(name="ifcont")
        for block in open_ends:
            self.builder.position_at_end(block)
            self.builder.branch(exit_bb)
        self.builder.position_at_end(exit_bb)
        if not open_ends:
            self.builder.unreachable()

    def _lower_for_in(self, loop: Loop) -> None:
        fn = self._function
        if isinstance(loop.condition, SequenceLiteral) and not loop.condition.elements:
            logger.debug("for-in over an empty sequence lowers to nothing")
            return

        sequence = self._lower_operand(loop.condition, "a for-in loop")
        seq_type = type_of(sequence)
        if not isinstance(seq_type, SequenceType):
            raise CompileError(type_mismatch(
                f"for-in loop needs a sequence, got {seq_type}",
                loop.condition.location, actual=str(seq_type),
            ))
        zero = llvm_ir.Constant(I64, 0)
        element_ir_type = sequence.type.pointee.element
        slot = self._entry_alloca(element_ir_type, loop.element_name or "element")
        first = self.builder.load(self._element_pointer(sequence, zero), name="first")
        self.builder.store(first, slot)

        preheader = self.builder.block
        header = fn.append_basic_block(name="loop")
        self.builder.branch(header)

        self.builder.position_at_end(header)
        index = self.builder.phi(I64, name=loop.index_name or "index")
        index.add_incoming(zero, preheader)
        element = self.builder.load(slot, name=loop.element_name or "element")

        bindings = {loop.element_name: element}
        if loop.index_name:
            bindings[loop.index_name] = index
        with self.scope.frame(bindings):
            terminal = self._lower_block(loop.body)

        after = fn.append_basic_block(name="afterloop")
        if terminal:
            self.builder.position_at_end(after)
            self.builder.unreachable()
            return

        following = self.builder.add(index, llvm_ir.Constant(I64, 1), name="nextindex")
        more = self.builder.icmp_signed("<", following,
                                        llvm_ir.Constant(I64, seq_type.length), name="loopcond")
        advance = fn.append_basic_block(name="loop.next")
        self.builder.cbranch(more, advance, after)

        self.builder.position_at_end(advance)
        next_element = self.builder.load(self._element_pointer(sequence, following), name="next")
        self.builder.store(next_element, slot)
        self.builder.branch(header)
        index.add_incoming(following, advance)

        self.builder.position_at_end(after)

    def _lower_while(self, loop: Loop) -> None:
        fn = self._function
        preheader = self.builder.block
        header = fn.append_basic_block(name="loop")
        body_bb = fn.append_basic_block(name="loop.body")
        after = fn.append_basic_block(name="afterloop")
        self.builder.branch(header)

        self.builder.position_at_end(header)
        index = self.builder.phi(I64, name="index")
        index.add_incoming(llvm_ir.Constant(I64, 0), preheader)
        cond = self._lower_condition(loop.condition, "for")
        self.builder.cbranch(cond, body_bb, after)

        self.builder.position_at_end(body_bb)
        if not self._lower_block(loop.body):
            following = self.builder.add(index, llvm_ir.Constant(I64, 1), name="nextindex")
            index.add_incoming(following, self.builder.block)
            self.builder.branch(header)

        self.builder.position_at_end(after)

    # -------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------

    def _lower_expr(self, expr: Expr) -> Any:
        if isinstance(expr, NumberLiteral):
            return self._lower_number(expr)
        if isinstance(expr, StringLiteral):
            return self._string_constant(expr.value)
        if isinstance(expr, BoolLiteral):
            return llvm_ir.Constant(I1, 1 if expr.value else 0)
        if isinstance(expr, SequenceLiteral):
            return self._lower_sequence(expr)
        if isinstance(expr, Variable):
            value = self.scope.lookup(expr.name)
            if value is None:
                raise CompileError(undefined_symbol(expr.name, "variable", expr.location))
            return value
        if isinstance(expr, Binary):
            return self._lower_binary(expr)
        if isinstance(expr, Unary):
            return self._lower_unary(expr)
        if isinstance(expr, Call):
            return self._lower_call(expr)
        raise CompileError(internal_error(f"Cannot lower expression {type(expr).__name__}",
                                          expr.location))

    def _lower_operand(self, expr: Expr, context: str) -> Any:
        """Lower *expr* where a value is required."""
        value = self._lower_expr(expr)
        if isinstance(value.type, llvm_ir.VoidType):
            raise CompileError(type_mismatch(
                f"Void value used as {context}", expr.location, context=context,
            ))
        return value

    def _lower_number(self, expr: NumberLiteral) -> Any:
        if not expr.is_integer:
            return llvm_ir.Constant(DOUBLE, float(expr.value))
        value = int(expr.value)
        if not _INT64_MIN <= value <= _INT64_MAX:
            raise CompileError(type_mismatch(
                f"Integer literal {value} does not fit in 64 bits",
                expr.location, literal=str(value),
            ))
        return llvm_ir.Constant(I64, value)

    def _string_constant(self, text: str) -> Any:
        """Interned i8* to a private constant holding *text*."""
        if text in self._strings:
            return self._strings[text]

        data = bytearray(text.replace("\\n", "\n").encode("utf-8") + b"\x00")
        array_type = llvm_ir.ArrayType(I8, len(data))
        gv = llvm_ir.GlobalVariable(self.module, array_type,
                                    name=self.module.get_unique_name(".str"))
        gv.linkage = "private"
        gv.global_constant = True
        gv.unnamed_addr = True
        gv.initializer = llvm_ir.Constant(array_type, data)

        zero = llvm_ir.Constant(I32, 0)
        pointer = gv.gep([zero, zero])
        self._strings[text] = pointer
        return pointer

    def _lower_sequence(self, expr: SequenceLiteral) -> Any:
        if not expr.elements:
            raise CompileError(type_mismatch(
                "Empty sequence literal has no element type", expr.location,
            ))
        values = [self._lower_operand(e, "a sequence element") for e in expr.elements]
        element_type = type_of(values[0])
        if element_type not in PARAMETER_TYPES:
            raise CompileError(unsupported_type(str(element_type), "a sequence element",
                                                expr.elements[0].location))
        for value, element in zip(values[1:], expr.elements[1:]):
            actual = type_of(value)
            if actual != element_type:
                raise CompileError(type_mismatch(
                    f"Sequence elements must all be {element_type}, got {actual}",
                    element.location, expected=str(element_type), actual=str(actual),
                ))

        array_type = llvm_ir.ArrayType(values[0].type, len(values))
        slot = self._entry_alloca(array_type, "seq")
        for i, value in enumerate(values):
            self.builder.store(value, self._element_pointer(slot, llvm_ir.Constant(I64, i)))
        return slot

    def _element_pointer(self, sequence: Any, index: Any) -> Any:
        return self.builder.gep(sequence, [llvm_ir.Constant(I64, 0), index],
                                inbounds=True, name="elemptr")

    def _entry_alloca(self, typ: Any, name: str) -> Any:
        entry = self._function.entry_basic_block
        hoist = llvm_ir.IRBuilder()
        hoist.position_at_start(entry)
        slot = hoist.alloca(typ, name=name)
        # The insert shifted every index in entry; re-anchor the cursor.
        if self.builder.block is entry:
            self.builder.position_at_end(entry)
        return slot

    # -------------------------------------------------------------------
    # Operators and calls
    # -------------------------------------------------------------------

    def _lower_binary(self, expr: Binary) -> Any:
        op = expr.op
        lhs = self._lower_operand(expr.lhs, f"an operand of '{op}'")
        rhs = self._lower_operand(expr.rhs, f"an operand of '{op}'")
        lhs_type, rhs_type = type_of(lhs), type_of(rhs)

        overload_name = f"binary_{op}"
        overload = self.lookup_function(overload_name)
        if overload is not None and len(overload.args) == 2:
            if overload.args[0].type == lhs.type and overload.args[1].type == rhs.type:
                return self.builder.call(overload, [lhs, rhs], name="binop")

        if lhs_type != rhs_type or not _supports_builtin(lhs_type, op):
            operand_types = [str(lhs_type), str(rhs_type)]
            if overload is not None:
                raise CompileError(missing_overload(overload_name, operand_types, expr.location))
            if lhs_type != rhs_type:
                raise CompileError(type_mismatch(
                    f"Operands of '{op}' must have the same type, got {lhs_type} and {rhs_type}",
                    expr.location, operator=op, lhs=str(lhs_type), rhs=str(rhs_type),
                ))
            if lhs_type == STRING and op == "+":
                raise CompileError(type_mismatch(
                    "String concatenation is not supported", expr.location,
                    operator=op, type=str(lhs_type),
                ))
            raise CompileError(type_mismatch(
                f"Operator '{op}' is not supported for {lhs_type}",
                expr.location, operator=op, type=str(lhs_type),
            ))

        return self._lower_builtin(op, lhs, rhs, lhs_type)

    def _lower_builtin(self, op: str, lhs: Any, rhs: Any, typ: NovumType) -> Any:
        if typ == INTEGER:
            if op in _INTEGER_ARITHMETIC:
                return getattr(self.builder, _INTEGER_ARITHMETIC[op])(lhs, rhs, name="tmp")
            return self.builder.icmp_signed(op, lhs, rhs, name="cmptmp")

        if typ == FLOAT:
            if op == "/" and self.config.division_guard_enabled():
                return self._guarded_division(lhs, rhs)
            if op in _FLOAT_ARITHMETIC:
                return getattr(self.builder, _FLOAT_ARITHMETIC[op])(lhs, rhs, name="tmp")
            return self.builder.fcmp_ordered(op, lhs, rhs, name="cmptmp")

        # Strings compare by address, Booleans by value.
        return self.builder.icmp_unsigned(op, lhs, rhs, name="cmptmp")

    def _guarded_division(self, lhs: Any, rhs: Any) -> Any:
        fn = self._function
        puts = self._runtime_function("puts", llvm_ir.FunctionType(I32, [CHAR_PTR]))
        abort = self._runtime_function("abort", llvm_ir.FunctionType(llvm_ir.VoidType(), []))
        abort.attributes.add("noreturn")

        is_zero = self.builder.fcmp_ordered("==", rhs, llvm_ir.Constant(DOUBLE, 0.0),
                                            name="divzero")
        trap_bb = fn.append_basic_block(name="div.trap")
        compute_bb = fn.append_basic_block(name="div.compute")
        merge_bb = fn.append_basic_block(name="div.merge")
        self.builder.cbranch(is_zero, trap_bb, compute_bb)

        self.builder.position_at_end(trap_bb)
        self.builder.call(puts, [self._string_constant(DIVISION_BY_ZERO_MESSAGE)])
        self.builder.call(abort, [])
        self.builder.branch(merge_bb)

        self.builder.position_at_end(compute_bb)
        quotient = self.builder.fdiv(lhs, rhs, name="quotient")
        self.builder.branch(merge_bb)

        self.builder.position_at_end(merge_bb)
        result = self.builder.phi(DOUBLE, name="divtmp")
        result.add_incoming(quotient, compute_bb)
        result.add_incoming(llvm_ir.Constant(DOUBLE, llvm_ir.Undefined), trap_bb)
        return result

    def _lower_unary(self, expr: Unary) -> Any:
        name = f"unary_{expr.op}"
        operand = self._lower_operand(expr.operand, f"the operand of '{expr.op}'")
        fn = self.lookup_function(name)
        if fn is None or len(fn.args) != 1 or fn.args[0].type != operand.type:
            raise CompileError(missing_overload(name, [str(type_of(operand))], expr.location))
        return self.builder.call(fn, [operand], name="unop")

    def _lower_call(self, expr: Call) -> Any:
        callee = self.lookup_function(expr.callee)
        if callee is None:
            raise CompileError(undefined_symbol(expr.callee, "procedure", expr.location))
        if len(expr.args) != len(callee.args):
            raise CompileError(arity_mismatch(expr.callee, len(callee.args), len(expr.args),
                                              expr.location))

        args = []
        for i, (arg_expr, param) in enumerate(zip(expr.args, callee.args), start=1):
            value = self._lower_operand(arg_expr, f"argument {i} of '{expr.callee}'")
            if value.type != param.type:
                expected, actual = type_from_llvm(param.type), type_of(value)
                raise CompileError(type_mismatch(
                    f"Argument {i} of '{expr.callee}' must be {expected}, got {actual}",
                    arg_expr.location, callee=expr.callee, position=i,
                    expected=str(expected), actual=str(actual),
                ))
            args.append(value)
        return self.builder.call(callee, args, name="calltmp")
