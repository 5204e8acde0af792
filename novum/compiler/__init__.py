"""Novum compiler pipeline — lexer, parser, code generator and LLVM backend."""

from .lexer import Lexer, Token, TokenType, tokenize
from .parser import Parser, parse
from .ast_nodes import *
from .errors import NovumError, ErrorKind, SourceLocation, CompileError
from .codegen import CodeGenerator
from .backend import Backend
from .driver import CompilationResult, compile_source, compile_file
