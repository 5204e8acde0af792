"""Novum Code Generator Tests.

Lowering is inspected on the unoptimized llvmlite module: blocks, phi
nodes, calls and comparisons as emitted, before any LLVM pass runs.
"""

import logging

import pytest
from llvmlite import ir as llvm_ir

from novum.config import CompilerConfig, ENV_NO_DIV_GUARD, ENV_DEBUG
from novum.compiler.ast_nodes import Prototype, Parameter
from novum.compiler.backend import Backend
from novum.compiler.codegen import CodeGenerator, TOPLEVEL_FUNCTION
from novum.compiler.driver import compile_source, declare_pass, body_pass
from novum.compiler.errors import CompileError, ErrorKind


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    monkeypatch.delenv(ENV_NO_DIV_GUARD, raising=False)
    monkeypatch.delenv(ENV_DEBUG, raising=False)


def unoptimized(source, **overrides):
    config = CompilerConfig(optimize=False, **overrides)
    return compile_source(source, filename="<test>", config=config).module


def generator_after_failure(source, kind):
    """Run both passes expecting *kind*; return the generator for inspection."""
    config = CompilerConfig(optimize=False)
    gen = CodeGenerator(Backend("test", config), config)
    with pytest.raises(CompileError) as exc:
        declare_pass(gen, source, "<test>")
        body_pass(gen, source, "<test>")
    assert exc.value.kind == kind
    return gen, exc.value


def compile_error(source, **overrides):
    with pytest.raises(CompileError) as exc:
        unoptimized(source, **overrides)
    return exc.value


def instructions(fn):
    return [inst for block in fn.blocks for inst in block.instructions]


def opcodes(fn):
    return [inst.opname for inst in instructions(fn)]


def calls_to(fn, name):
    return [inst for inst in instructions(fn)
            if isinstance(inst, llvm_ir.CallInstr) and inst.callee.name == name]


def blocks_named(fn, prefix):
    return [b for b in fn.blocks if b.name.startswith(prefix)]


def phis(fn):
    return [inst for inst in instructions(fn) if isinstance(inst, llvm_ir.PhiInstr)]


class TestLiterals:

    def test_integer_and_float_constants(self):
        module = unoptimized("fun f(): Integer { return 7 }\nfun g(): Float { return 2.5 }")
        ret_f = module.get_global("f").blocks[0].terminator
        ret_g = module.get_global("g").blocks[0].terminator
        assert ret_f.operands[0].type == llvm_ir.IntType(64)
        assert ret_f.operands[0].constant == 7
        assert ret_g.operands[0].type == llvm_ir.DoubleType()

    def test_boolean_constant(self):
        module = unoptimized("fun f(): Boolean { return true }")
        value = module.get_global("f").blocks[0].terminator.operands[0]
        assert value.type == llvm_ir.IntType(1)
        assert value.constant == 1

    def test_integer_literal_out_of_range(self):
        err = compile_error("fun f(): Integer { return 99999999999999999999 }")
        assert err.kind == ErrorKind.TYPE_MISMATCH

    def test_strings_are_interned(self):
        module = unoptimized(
            '@puts(s: String): Integer\n'
            'fun f(): Integer { puts("hi") return puts("hi") }'
        )
        strings = [g for g in module.global_values if isinstance(g, llvm_ir.GlobalVariable)]
        assert len(strings) == 1
        assert strings[0].linkage == "private"
        assert strings[0].global_constant
        assert strings[0].initializer.constant == bytearray(b"hi\x00")

    def test_backslash_n_becomes_newline(self):
        module = unoptimized('@puts(s: String): Integer\nfun f(): Integer { return puts("a\\nb") }')
        gv = [g for g in module.global_values if isinstance(g, llvm_ir.GlobalVariable)][0]
        assert gv.initializer.constant == bytearray(b"a\nb\x00")


class TestNames:

    def test_undefined_variable_leaves_declaration(self):
        gen, err = generator_after_failure(
            "fun f(a: Integer): Integer { x = a + 1\n return b }",
            ErrorKind.UNDEFINED_SYMBOL,
        )
        assert err.errors[0].details["name"] == "b"
        assert gen.module.get_global("f").is_declaration

    def test_undefined_procedure(self):
        err = compile_error("fun f(): Integer { return g() }")
        assert err.kind == ErrorKind.UNDEFINED_SYMBOL
        assert err.errors[0].details == {"name": "g", "symbol_kind": "procedure"}

    def test_binding_is_block_scoped(self):
        err = compile_error("fun f(a: Boolean): Integer { if a { x = 1 } return x }")
        assert err.kind == ErrorKind.UNDEFINED_SYMBOL

    def test_loop_variable_does_not_escape(self):
        err = compile_error("fun f(): Integer { for x in [1, 2] { } return x }")
        assert err.kind == ErrorKind.UNDEFINED_SYMBOL

    def test_forward_and_mutual_references(self):
        module = unoptimized(
            "fun isEven(n: Integer): Boolean { if n == 0 { return true } return isOdd(n - 1) }\n"
            "fun isOdd(n: Integer): Boolean { if n == 0 { return false } return isEven(n - 1) }"
        )
        assert len(calls_to(module.get_global("isEven"), "isOdd")) == 1
        assert len(calls_to(module.get_global("isOdd"), "isEven")) == 1

    def test_loop_binding_shadow_is_restored(self):
        module = unoptimized("fun f(x: Integer): Integer { for x in [1.5, 2.5] { } return x }")
        fn = module.get_global("f")
        ret = [b.terminator for b in fn.blocks if b.terminator.opname == "ret"][0]
        assert ret.operands[0] is fn.args[0]

    def test_nested_loop_shadows_unwind(self):
        unoptimized(
            "fun f(): Integer {\n"
            "  for x in [1, 2] {\n"
            "    for x in [0.5] { }\n"
            "    y = x + 1\n"
            "  }\n"
            "  return 0\n"
            "}"
        )


class TestCalls:

    SOURCE = (
        "fun add(a: Integer, b: Integer): Integer {{ return a + b }}\n"
        "fun main(): Integer {{ return add({args}) }}"
    )

    @pytest.mark.parametrize("args,actual", [("1", 1), ("1, 2, 3", 3)])
    def test_arity_mismatch(self, args, actual):
        err = compile_error(self.SOURCE.format(args=args))
        assert err.kind == ErrorKind.ARITY_MISMATCH
        assert err.errors[0].details == {"callee": "add", "expected": 2, "actual": actual}

    def test_exact_arity_emits_call(self):
        module = unoptimized(self.SOURCE.format(args="1, 2"))
        calls = calls_to(module.get_global("main"), "add")
        assert len(calls) == 1
        assert len(calls[0].args) == 2

    def test_argument_type_mismatch(self):
        err = compile_error(self.SOURCE.format(args="1.0, 2"))
        assert err.kind == ErrorKind.TYPE_MISMATCH
        assert err.errors[0].details["position"] == 1

    def test_void_call_as_value(self):
        err = compile_error("@tick()\nfun f(): Integer { x = tick() return 1 }")
        assert err.kind == ErrorKind.TYPE_MISMATCH

    def test_void_call_as_statement(self):
        module = unoptimized("@tick()\nfun f(): Integer { tick() return 1 }")
        assert len(calls_to(module.get_global("f"), "tick")) == 1


class TestOperators:

    def test_integer_arithmetic(self):
        module = unoptimized("fun f(a: Integer, b: Integer): Integer { return a * b - a / b }")
        ops = opcodes(module.get_global("f"))
        assert "mul" in ops and "sdiv" in ops and "sub" in ops

    def test_float_comparison(self):
        module = unoptimized("fun f(a: Float, b: Float): Boolean { return a < b }")
        assert "fcmp" in opcodes(module.get_global("f"))

    def test_string_equality_by_address(self):
        module = unoptimized("fun f(a: String, b: String): Boolean { return a == b }")
        cmps = [i for i in instructions(module.get_global("f")) if i.opname == "icmp"]
        assert len(cmps) == 1
        assert cmps[0].op == "eq"

    def test_boolean_not_equal(self):
        module = unoptimized("fun f(a: Boolean, b: Boolean): Boolean { return a != b }")
        assert "icmp" in opcodes(module.get_global("f"))

    def test_mismatched_operand_types(self):
        err = compile_error("fun f(x: Integer, y: Float): Integer { return x + y }")
        assert err.kind == ErrorKind.TYPE_MISMATCH
        assert err.errors[0].details["lhs"] == "Integer"
        assert err.errors[0].details["rhs"] == "Float"

    def test_string_concatenation_rejected(self):
        err = compile_error("fun f(a: String, b: String): String { return a + b }")
        assert err.kind == ErrorKind.TYPE_MISMATCH
        assert "concatenation" in err.errors[0].message

    def test_boolean_arithmetic_rejected(self):
        err = compile_error("fun f(a: Boolean, b: Boolean): Boolean { return a < b }")
        assert err.kind == ErrorKind.TYPE_MISMATCH


class TestOverloads:

    def test_matching_binary_overload_beats_builtin(self):
        module = unoptimized(
            "fun binary_+(a: Float, b: Float): Float { return a - b }\n"
            "fun f(x: Float, y: Float): Float { return x + y }"
        )
        fn = module.get_global("f")
        assert len(calls_to(fn, "binary_+")) == 1
        assert "fadd" not in opcodes(fn)

    def test_non_matching_overload_falls_back_to_builtin(self):
        module = unoptimized(
            "fun binary_+(a: Float, b: Float): Float { return a - b }\n"
            "fun g(x: Integer, y: Integer): Integer { return x + y }"
        )
        fn = module.get_global("g")
        assert calls_to(fn, "binary_+") == []
        assert "add" in opcodes(fn)

    def test_overload_for_operator_without_builtin(self):
        module = unoptimized(
            "fun binary_%(a: Integer, b: Integer): Integer { return a - b * (a / b) }\n"
            "fun f(x: Integer, y: Integer): Integer { return x % y }"
        )
        assert len(calls_to(module.get_global("f"), "binary_%")) == 1

    def test_overload_with_wrong_types_is_missing_overload(self):
        err = compile_error(
            "fun binary_%(a: Float, b: Float): Float { return a }\n"
            "fun h(x: Integer, y: Integer): Integer { return x % y }"
        )
        assert err.kind == ErrorKind.MISSING_OVERLOAD
        assert err.errors[0].details["operand_types"] == ["Integer", "Integer"]

    def test_mixed_types_through_overload(self):
        module = unoptimized(
            "fun binary_*(s: String, n: Integer): String { return s }\n"
            'fun f(): String { return "ab" * 3 }'
        )
        assert len(calls_to(module.get_global("f"), "binary_*")) == 1

    def test_unary_requires_overload(self):
        err = compile_error("fun f(x: Integer): Integer { return -x }")
        assert err.kind == ErrorKind.MISSING_OVERLOAD
        assert err.errors[0].details["function"] == "unary_-"

    def test_unary_overload(self):
        module = unoptimized(
            "fun unary_-(v: Integer): Integer { return 0 - v }\n"
            "fun f(x: Integer): Integer { return -x }"
        )
        assert len(calls_to(module.get_global("f"), "unary_-")) == 1


class TestDivisionGuard:

    def test_float_division_builds_one_diamond(self):
        module = unoptimized("fun div(a: Float, b: Float): Float { return a / b }")
        fn = module.get_global("div")
        assert len(blocks_named(fn, "div.trap")) == 1
        assert len(blocks_named(fn, "div.compute")) == 1
        merge = blocks_named(fn, "div.merge")
        assert len(merge) == 1
        (phi,) = phis(fn)
        assert len(phi.incomings) == 2
        assert phi.parent is merge[0]

    def test_division_by_zero_constant_traps(self):
        module = unoptimized("fun main(): Float { return 5.0 / 0.0 }")
        fn = module.get_global("main")
        (trap,) = blocks_named(fn, "div.trap")
        entry_branch = fn.blocks[0].terminator
        assert entry_branch.opname == "br"
        assert trap in entry_branch.operands

        body = trap.instructions
        assert [i.callee.name for i in body if isinstance(i, llvm_ir.CallInstr)] == ["puts", "abort"]
        assert body[-2].callee.name == "abort"
        assert "fdiv" not in [i.opname for i in body]

    def test_runtime_functions_declared_once(self):
        module = unoptimized("fun f(a: Float): Float { return a / 2.0 / a }")
        fn = module.get_global("f")
        assert len(blocks_named(fn, "div.trap")) == 2
        assert module.get_global("puts").is_declaration
        assert module.get_global("abort").is_declaration

    def test_integer_division_unguarded(self):
        module = unoptimized("fun f(a: Integer, b: Integer): Integer { return a / b }")
        fn = module.get_global("f")
        assert blocks_named(fn, "div.trap") == []
        assert "sdiv" in opcodes(fn)

    def test_disabled_by_environment(self, monkeypatch):
        monkeypatch.setenv(ENV_NO_DIV_GUARD, "1")
        module = unoptimized("fun div(a: Float, b: Float): Float { return a / b }")
        fn = module.get_global("div")
        assert blocks_named(fn, "div.trap") == []
        assert "fdiv" in opcodes(fn)

    def test_disabled_by_config(self):
        module = unoptimized("fun div(a: Float, b: Float): Float { return a / b }",
                             division_guard=False)
        assert len(module.get_global("div").blocks) == 1

    def test_conflicting_puts(self):
        err = compile_error("@puts(s: String): Integer\nfun f(a: Float): Float { return a / a }")
        assert err.kind == ErrorKind.TYPE_MISMATCH
        assert err.errors[0].details["function"] == "puts"


class TestConditionals:

    def test_else_block_always_created(self):
        module = unoptimized("fun f(a: Boolean): Integer { if a { return 1 } return 2 }")
        names = [b.name for b in module.get_global("f").blocks]
        assert "then" in names
        assert "else" in names
        assert "ifcont" in names

    def test_all_branches_return(self):
        module = unoptimized(
            "fun sign(a: Integer): Integer { if a < 0 { return 0 - 1 } else { return 1 } }"
        )
        (exit_bb,) = blocks_named(module.get_global("sign"), "ifcont")
        assert exit_bb.terminator.opname == "unreachable"

    def test_else_if_chain(self):
        module = unoptimized(
            "fun f(a: Integer): Integer {\n"
            "  if a < 0 { return 0 } else if a == 0 { return 1 } else if a > 10 { return 2 }\n"
            "  return 3\n"
            "}"
        )
        fn = module.get_global("f")
        cond_branches = [b.terminator for b in fn.blocks
                         if b.terminator.opname == "br" and len(b.terminator.operands) == 3]
        assert len(cond_branches) == 3
        assert len(blocks_named(fn, "else")) == 1

    def test_condition_must_be_boolean(self):
        err = compile_error("fun f(a: Integer): Integer { if a { return 1 } return 0 }")
        assert err.kind == ErrorKind.TYPE_MISMATCH


class TestLoops:

    FOR_IN = (
        "@printi(v: Integer): Integer\n"
        "fun f(): Integer {\n"
        "  for i, x in [10, 20, 30, 40] { printi(x + i) }\n"
        "  return 0\n"
        "}"
    )

    def test_for_in_induction_phi(self):
        fn = unoptimized(self.FOR_IN).get_global("f")
        (phi,) = phis(fn)
        assert len(phi.incomings) == 2
        assert {block.name for _, block in phi.incomings} == {"entry", "loop.next"}

    def test_for_in_exit_test_against_length(self):
        fn = unoptimized(self.FOR_IN).get_global("f")
        (phi,) = phis(fn)
        (cmp,) = [i for i in instructions(fn) if i.opname == "icmp"]
        assert cmp.op == "slt"
        assert cmp.operands[1].constant == 4
        step = cmp.operands[0]
        assert step.opname == "add"
        assert step.operands[0] is phi
        assert step.operands[1].constant == 1

    def test_element_slot_in_entry_block(self):
        fn = unoptimized(self.FOR_IN).get_global("f")
        allocas = [i for i in instructions(fn) if i.opname == "alloca"]
        assert allocas
        assert all(i.parent is fn.blocks[0] for i in allocas)

    def test_terminal_for_in(self):
        fn = unoptimized("fun f(): Integer { for x in [1, 2] { return x } }").get_global("f")
        (phi,) = phis(fn)
        assert len(phi.incomings) == 1
        (after,) = blocks_named(fn, "afterloop")
        assert after.terminator.opname == "unreachable"
        assert blocks_named(fn, "loop.next") == []

    def test_empty_sequence_lowers_to_nothing(self):
        fn = unoptimized(
            "@printi(v: Integer): Integer\n"
            "fun f(): Integer { for x in [] { printi(x) } return 1 }"
        ).get_global("f")
        assert len(fn.blocks) == 1
        assert calls_to(fn, "printi") == []

    def test_bound_sequence(self):
        fn = unoptimized(
            "fun f(): Float { xs = [1.5, 2.5, 3.5]\n for x in xs { } return 0.0 }"
        ).get_global("f")
        (cmp,) = [i for i in instructions(fn) if i.opname == "icmp"]
        assert cmp.operands[1].constant == 3

    def test_while_style(self):
        fn = unoptimized(
            "@printi(v: Integer): Integer\n"
            "fun f(n: Integer): Integer { for n > 0 { printi(n) } return n }"
        ).get_global("f")
        (phi,) = phis(fn)
        assert len(phi.incomings) == 2
        assert blocks_named(fn, "loop.body")

    def test_while_condition_must_be_boolean(self):
        err = compile_error("fun f(n: Integer): Integer { for n { } return n }")
        assert err.kind == ErrorKind.TYPE_MISMATCH

    def test_for_in_requires_sequence(self):
        err = compile_error("fun f(): Integer { for x in 5 { } return 0 }")
        assert err.kind == ErrorKind.TYPE_MISMATCH

    def test_mixed_sequence_rejected(self):
        err = compile_error("fun f(): Integer { for x in [1, 2.0] { } return 0 }")
        assert err.kind == ErrorKind.TYPE_MISMATCH


class TestDeclarations:

    def test_redeclaration_reuses_function(self):
        module = unoptimized(
            "@puts(s: String): Integer\n"
            "fun helper(a: Integer): Integer { return a }\n"
            'fun main(): Integer { puts("x") return helper(1) }'
        )
        assert sorted(fn.name for fn in module.functions) == ["helper", "main", "puts"]

    def test_declare_is_idempotent(self):
        gen = CodeGenerator(config=CompilerConfig(optimize=False))
        proto = Prototype(name="f", params=[Parameter("a", "Integer")], return_type="Float")
        assert gen.declare(proto) is gen.declare(proto)
        assert len(gen.module.functions) == 1
        assert gen.module.get_global("f").args[0].name == "a"

    def test_conflicting_declaration(self):
        err = compile_error("@f(a: Integer): Integer\nfun f(a: Float): Integer { return 1 }")
        assert err.kind == ErrorKind.TYPE_MISMATCH

    def test_duplicate_definition(self):
        err = compile_error("fun f(): Integer { return 1 }\nfun f(): Integer { return 2 }")
        assert err.kind == ErrorKind.DUPLICATE_DEFINITION

    @pytest.mark.parametrize("source", [
        "fun f(a: Matrix): Integer { return 1 }",
        "fun f(a: Void): Integer { return 1 }",
        "fun f(): Decimal { return 1 }",
    ])
    def test_unsupported_type(self, source):
        assert compile_error(source).kind == ErrorKind.UNSUPPORTED_TYPE


class TestFunctionFinalize:

    def test_missing_return_removes_function(self):
        gen, err = generator_after_failure(
            "fun f(a: Integer): Integer { a + 1 }", ErrorKind.VERIFICATION_ERROR,
        )
        assert err.errors[0].details["function"] == "f"
        assert "f" not in gen.module.globals

    def test_backend_rejection_removes_function(self):
        config = CompilerConfig(optimize=False)
        gen = CodeGenerator(Backend("test", config), config)
        proto = Prototype(name="f", params=[Parameter("a", "Integer")], return_type="Integer")
        fn = gen.declare(proto)
        gen._begin(fn, {"a": fn.args[0]})

        # %sum is defined on one arm only, yet used after the join
        left = fn.append_basic_block(name="left")
        right = fn.append_basic_block(name="right")
        join = fn.append_basic_block(name="join")
        gen.builder.cbranch(llvm_ir.Constant(llvm_ir.IntType(1), 1), left, right)
        gen.builder.position_at_end(left)
        total = gen.builder.add(fn.args[0], llvm_ir.Constant(llvm_ir.IntType(64), 1), name="sum")
        gen.builder.branch(join)
        gen.builder.position_at_end(right)
        gen.builder.branch(join)
        gen.builder.position_at_end(join)
        gen.builder.ret(total)

        with pytest.raises(CompileError) as exc:
            gen._finish(fn, None)
        assert exc.value.kind == ErrorKind.VERIFICATION_ERROR
        assert exc.value.errors[0].details["function"] == "f"
        assert "f" not in gen.module.globals
        assert gen.backend.scheduled == []

    def test_return_type_checked(self):
        err = compile_error("fun f(): Integer { return 1.5 }")
        assert err.kind == ErrorKind.TYPE_MISMATCH

    def test_void_function(self):
        module = unoptimized("fun f() { return }")
        terminator = module.get_global("f").blocks[0].terminator
        assert terminator.opname == "ret void"
        assert terminator.operands == []

    def test_unreachable_statements_skipped(self, caplog):
        source = "@printi(v: Integer): Integer\nfun f(): Integer { return 1\n printi(2) }"
        with caplog.at_level(logging.WARNING, logger="novum.compiler.codegen"):
            module = unoptimized(source)
        assert calls_to(module.get_global("f"), "printi") == []
        assert "unreachable" in caplog.text

    def test_scheduled_for_optimization(self):
        config = CompilerConfig()
        result = compile_source("fun f(): Integer { return 1 }", config=config)
        assert result.backend.scheduled == ["f"]

    def test_debug_environment_suppresses_optimization(self, monkeypatch):
        monkeypatch.setenv(ENV_DEBUG, "yes")
        result = compile_source("fun f(): Integer { return 2 * 3 }", config=CompilerConfig())
        assert result.backend.scheduled == []
        assert "mul i64 2, 3" in result.ir


class TestTopLevel:

    def test_toplevel_function(self):
        module = unoptimized("@printi(v: Integer): Integer\nprinti(1)\nx = 2\nprinti(x)")
        fn = module.get_global(TOPLEVEL_FUNCTION)
        assert isinstance(fn.ftype.return_type, llvm_ir.VoidType)
        assert len(calls_to(fn, "printi")) == 2
        assert fn.blocks[-1].terminator.opname == "ret void"
        assert fn.blocks[-1].terminator.operands == []

    def test_no_toplevel_without_statements(self):
        module = unoptimized("fun f(): Integer { return 1 }")
        assert TOPLEVEL_FUNCTION not in module.globals

    def test_toplevel_cannot_return_value(self):
        err = compile_error("return 5")
        assert err.kind == ErrorKind.TYPE_MISMATCH
