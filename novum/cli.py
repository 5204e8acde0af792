"""Novum CLI — Command-line interface for the Novum compiler.

Commands:
  novum compile <file.nv> [-o OUT] [--emit ll|asm|obj]   — Compile to IR, assembly or object
  novum check <file.nv>                                  — Compile without writing output
  novum tokens <file.nv>                                 — Dump the token stream (JSON)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys

from novum import __version__
from novum.config import CompilerConfig, load_config
from novum.compiler.driver import compile_source
from novum.compiler.errors import CompileError
from novum.compiler.lexer import TokenType, tokenize

_EXTENSIONS = {"ll": ".ll", "asm": ".s", "obj": ".o"}


def _read_source(path: str) -> bytes | None:
    if not os.path.exists(path):
        print(json.dumps({"error": f"File not found: {path}"}))
        return None
    with open(path, "rb") as f:
        return f.read()


def _config_for(args: argparse.Namespace) -> CompilerConfig:
    """Project config file values, overridden by command-line flags."""
    config = load_config(
        path=getattr(args, "config", None),
        start_dir=os.path.dirname(os.path.abspath(args.file)),
    )
    if getattr(args, "no_div_guard", False):
        config.division_guard = False
    if getattr(args, "no_optimize", False):
        config.optimize = False
    if getattr(args, "loop_passes", False):
        config.loop_passes = True
    return config


def cmd_compile(args: argparse.Namespace) -> int:
    """Compile a Novum source file and write the requested artifact."""
    source = _read_source(args.file)
    if source is None:
        return 1

    try:
        result = compile_source(source, filename=args.file, config=_config_for(args))
        if args.emit == "asm":
            artifact: str | bytes = result.backend.emit_assembly()
        elif args.emit == "obj":
            artifact = result.backend.emit_object()
        else:
            artifact = result.ir
    except CompileError as e:
        print(e.to_json())
        return 1

    output = args.output or os.path.splitext(args.file)[0] + _EXTENSIONS[args.emit]
    if output == "-":
        if isinstance(artifact, bytes):
            sys.stdout.buffer.write(artifact)
        else:
            sys.stdout.write(artifact)
        return 0

    mode = "wb" if isinstance(artifact, bytes) else "w"
    with open(output, mode) as f:
        f.write(artifact)
    print(json.dumps({"status": "compiled", "emit": args.emit, "path": output}))
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    """Run both passes and verification, write nothing."""
    source = _read_source(args.file)
    if source is None:
        return 1

    try:
        result = compile_source(source, filename=args.file, config=_config_for(args))
    except CompileError as e:
        print(e.to_json())
        return 1

    print(json.dumps({"status": "ok", "functions": result.functions}))
    return 0


def cmd_tokens(args: argparse.Namespace) -> int:
    """Dump the token stream as JSON."""
    source = _read_source(args.file)
    if source is None:
        return 1

    try:
        tokens = tokenize(source, filename=args.file)
    except CompileError as e:
        print(e.to_json())
        return 1

    print(json.dumps([
        {
            "type": tok.type.name,
            "value": tok.number if tok.type == TokenType.NUMBER else tok.value,
            "line": tok.location.line,
            "column": tok.location.column,
        }
        for tok in tokens
    ], indent=2))
    return 0


def _add_codegen_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default=None, help="Config file (default: nearest .novumrc.json)")
    p.add_argument("--no-div-guard", action="store_true", dest="no_div_guard",
                   help="Do not guard floating-point division by zero")
    p.add_argument("--no-optimize", action="store_true", dest="no_optimize",
                   help="Skip the function optimization passes")
    p.add_argument("--loop-passes", action="store_true", dest="loop_passes",
                   help="Add loop-simplify and loop-rotate to the pass pipeline")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="novum",
        description="Novum — compile a small expression language to LLVM IR",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")

    # compile
    p_compile = subparsers.add_parser("compile", help="Compile Novum source")
    p_compile.add_argument("file", help="Novum source file (.nv)")
    p_compile.add_argument("-o", "--output", help="Output path ('-' for stdout)")
    p_compile.add_argument("--emit", choices=["ll", "asm", "obj"], default="ll",
                           help="Artifact to write (default: ll)")
    _add_codegen_flags(p_compile)
    p_compile.set_defaults(func=cmd_compile)

    # check
    p_check = subparsers.add_parser("check", help="Compile and verify without writing output")
    p_check.add_argument("file", help="Novum source file (.nv)")
    _add_codegen_flags(p_check)
    p_check.set_defaults(func=cmd_check)

    # tokens
    p_tokens = subparsers.add_parser("tokens", help="Dump the token stream as JSON")
    p_tokens.add_argument("file", help="Novum source file (.nv)")
    p_tokens.set_defaults(func=cmd_tokens)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
