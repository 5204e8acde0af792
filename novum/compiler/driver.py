"""Novum compilation driver.

Two passes over one unit, each with its own lexer and parser:

  init pass   register every function prototype and extern, so bodies
              may call forward and mutually recursive functions
  body pass   lower every function body; top-level statements are
              gathered into ``__toplevel``

The module is then verified as a whole and optimized by the backend.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Any, Union

from novum.config import CompilerConfig, load_config
from novum.compiler.ast_nodes import Function, Extern, Statement
from novum.compiler.backend import Backend
from novum.compiler.codegen import CodeGenerator
from novum.compiler.lexer import Lexer
from novum.compiler.parser import Parser

logger = logging.getLogger(__name__)


@dataclass
class CompilationResult:
    module: Any
    backend: Backend
    ir: str = ""
    functions: list[str] = field(default_factory=list)


def _items(source: Union[str, bytes], filename: str):
    parser = Parser(Lexer(source, filename))
    while True:
        item = parser.parse_item()
        if item is None:
            return
        yield item


def declare_pass(codegen: CodeGenerator, source: Union[str, bytes], filename: str) -> int:
    """Register prototypes and externs. Returns how many were seen."""
    count = 0
    for item in _items(source, filename):
        if isinstance(item, (Function, Extern)):
            codegen.declare(item.proto)
            count += 1
    logger.debug("init pass: %d declaration(s) in %s", count, filename)
    return count


def body_pass(codegen: CodeGenerator, source: Union[str, bytes], filename: str) -> None:
    """Lower bodies, reusing the declarations from the init pass."""
    toplevel: list[Statement] = []
    for item in _items(source, filename):
        if isinstance(item, Function):
            codegen.lower_function(item)
        elif isinstance(item, Extern):
            codegen.declare(item.proto)
        else:
            toplevel.append(item)
    codegen.lower_toplevel(toplevel)
    logger.debug("body pass: %d top-level statement(s) in %s", len(toplevel), filename)


def compile_source(source: Union[str, bytes], filename: str = "<stdin>",
                   config: Optional[CompilerConfig] = None) -> CompilationResult:
    """Compile one unit of Novum source. Raises CompileError on the first
    violation; nothing is produced in that case."""
    config = config or CompilerConfig()
    backend = Backend(config.module_name, config)
    codegen = CodeGenerator(backend, config)

    declare_pass(codegen, source, filename)
    body_pass(codegen, source, filename)

    ref = backend.finalize()
    functions = [fn.name for fn in backend.module.functions if not fn.is_declaration]
    return CompilationResult(
        module=backend.module,
        backend=backend,
        ir=str(ref),
        functions=functions,
    )


def compile_file(path: str, config: Optional[CompilerConfig] = None) -> CompilationResult:
    """Read *path* wholesale and compile it. Without an explicit config
    the nearest project config file is used."""
    if config is None:
        config = load_config(start_dir=os.path.dirname(os.path.abspath(path)))
    with open(path, "rb") as f:
        source = f.read()
    return compile_source(source, filename=path, config=config)
