"""Novum IR Backend — verification, optimization and native emission.

The code generator builds an llvmlite.ir module; this backend hands its
text to LLVM (llvmlite.binding) for structural verification, runs the
function pass pipeline on finalized functions and serializes or lowers
the result. We write zero optimization code of our own.
"""

from __future__ import annotations

import logging
from typing import Optional, Any

from llvmlite import ir as llvm_ir
from llvmlite import binding as llvm_binding

from novum.config import CompilerConfig
from novum.compiler.errors import CompileError, verification_error

logger = logging.getLogger(__name__)


def _initialize_llvm() -> None:
    """Initialize LLVM native target machinery."""
    llvm_binding.initialize_native_target()
    llvm_binding.initialize_native_asmprinter()


def create_target_machine(opt: int = 2) -> Any:
    _initialize_llvm()
    target = llvm_binding.Target.from_default_triple()
    return target.create_target_machine(opt=opt)


class Backend:
    """Owns the IR module under construction and everything done to it
    after lowering: verify, optimize, dump, emit."""

    def __init__(self, name: str = "novum", config: Optional[CompilerConfig] = None):
        self.config = config or CompilerConfig()
        self.module = llvm_ir.Module(name=name)
        self.module.triple = llvm_binding.get_default_triple()
        self._scheduled: list[str] = []
        self._finalized: Optional[Any] = None

    # -------------------------------------------------------------------
    # Per-function
    # -------------------------------------------------------------------

    def verify_function(self, fn: llvm_ir.Function) -> Optional[str]:
        """Structurally verify *fn* within the current module.

        Returns the LLVM diagnostic on failure, None when well formed.
        """
        try:
            ref = llvm_binding.parse_assembly(str(self.module))
            ref.verify()
        except RuntimeError as e:
            logger.debug("verification of %s failed: %s", fn.name, e)
            return str(e).strip()
        return None

    def remove_function(self, fn: llvm_ir.Function) -> None:
        """Drop a partially built function from the module."""
        self.module.globals.pop(fn.name, None)
        if fn.name in self._scheduled:
            self._scheduled.remove(fn.name)

    def schedule_optimization(self, fn: llvm_ir.Function) -> None:
        if fn.name not in self._scheduled:
            self._scheduled.append(fn.name)
            logger.debug("scheduled %s for optimization", fn.name)

    @property
    def scheduled(self) -> list[str]:
        return list(self._scheduled)

    # -------------------------------------------------------------------
    # Whole module
    # -------------------------------------------------------------------

    def _function_pass_manager(self) -> Any:
        fpm = llvm_binding.create_new_function_pass_manager()
        fpm.add_instruction_combine_pass()
        fpm.add_new_gvn_pass()
        fpm.add_simplify_cfg_pass()
        if self.config.loop_passes:
            fpm.add_loop_simplify_pass()
            fpm.add_loop_rotate_pass()
        return fpm

    def _optimize(self, ref: Any) -> None:
        tm = create_target_machine(opt=self.config.speed_level)
        pto = llvm_binding.create_pipeline_tuning_options(speed_level=self.config.speed_level)
        pb = llvm_binding.create_pass_builder(tm, pto)
        fpm = self._function_pass_manager()
        for name in self._scheduled:
            logger.debug("optimizing %s", name)
            fpm.run(ref.get_function(name), pb)

    def finalize(self) -> Any:
        """Verify the whole module and run the scheduled optimizations.

        Returns the llvmlite.binding ModuleRef. Idempotent.
        """
        if self._finalized is not None:
            return self._finalized

        try:
            ref = llvm_binding.parse_assembly(str(self.module))
            ref.verify()
        except RuntimeError as e:
            raise CompileError(verification_error(self.module.name, str(e).strip()))

        if self._scheduled:
            self._optimize(ref)
            try:
                ref.verify()
            except RuntimeError as e:
                raise CompileError(verification_error(self.module.name, str(e).strip()))

        self._finalized = ref
        return ref

    def dump(self) -> str:
        """Textual IR of the finalized module."""
        return str(self.finalize())

    def emit_assembly(self) -> str:
        """Lower the finalized module to native assembly."""
        tm = create_target_machine(opt=self.config.speed_level)
        return tm.emit_assembly(self.finalize())

    def emit_object(self) -> bytes:
        """Lower the finalized module to a native object file image."""
        tm = create_target_machine(opt=self.config.speed_level)
        return tm.emit_object(self.finalize())
