"""Novum Parser — recursive-descent parser over the pull lexer.

Tokens are pulled from the lexer on demand with one token of lookahead.
Binary expressions use precedence climbing. Operator characters arrive as
UNKNOWN tokens and are read from their payload; ``!=`` is assembled from
``!`` followed by ``=``.

Items are produced one at a time by ``parse_item`` so the driver can run
a fresh lexer/parser pair for each compilation pass.
"""

from __future__ import annotations

from typing import Optional, Union

from novum.compiler.lexer import Lexer, Token, TokenType
from novum.compiler.ast_nodes import (
    Program, Item, Function, Extern, Prototype, Parameter,
    Statement, Block, If, ElseIf, Return, Loop, Binding,
    Expr, StringLiteral, NumberLiteral, BoolLiteral, SequenceLiteral,
    Variable, Binary, Unary, Call,
)
from novum.compiler.errors import SourceLocation, syntax_error, CompileError


BINARY_PRECEDENCE: dict[str, int] = {
    "==": 10,
    "!=": 10,
    "<": 10,
    ">": 10,
    "&": 15,
    "|": 15,
    "+": 20,
    "-": 20,
    "*": 40,
    "/": 40,
    "%": 40,
}

OPERATOR_CHARS = frozenset("+-*/<>!%&|")

OVERLOAD_PREFIXES = ("binary_", "unary_")


class Parser:
    """Recursive-descent parser for Novum."""

    def __init__(self, lexer: Lexer):
        self.lexer = lexer
        self.filename = lexer.filename
        self._lookahead: Optional[Token] = None
        self._tok = self._pull()

    def _pull(self) -> Token:
        self.lexer.next()
        return self.lexer.current()

    def _current(self) -> Token:
        return self._tok

    def _peek(self) -> TokenType:
        return self._tok.type

    def _peek_next(self) -> Token:
        if self._lookahead is None:
            self._lookahead = self._pull()
        return self._lookahead

    def _loc(self) -> SourceLocation:
        return self._tok.location

    def _advance(self) -> Token:
        tok = self._tok
        if tok.type != TokenType.EOF:
            if self._lookahead is not None:
                self._tok, self._lookahead = self._lookahead, None
            else:
                self._tok = self._pull()
        return tok

    def _is_char(self, ch: str) -> bool:
        return self._tok.type == TokenType.UNKNOWN and self._tok.value == ch

    def _error(self, message: str) -> CompileError:
        return CompileError(syntax_error(message, self._loc()))

    def _expect(self, tt: TokenType) -> Token:
        tok = self._current()
        if tok.type != tt:
            raise self._error(f"Expected {tt.name}, got {tok.type.name} ('{tok.value}')")
        return self._advance()

    def _expect_char(self, ch: str) -> Token:
        if not self._is_char(ch):
            tok = self._current()
            raise self._error(f"Expected '{ch}', got {tok.type.name} ('{tok.value}')")
        return self._advance()

    def _match(self, tt: TokenType) -> Optional[Token]:
        if self._peek() == tt:
            return self._advance()
        return None

    def _match_char(self, ch: str) -> Optional[Token]:
        if self._is_char(ch):
            return self._advance()
        return None

    # -------------------------------------------------------------------
    # Operators
    # -------------------------------------------------------------------

    def _peek_operator(self) -> Optional[str]:
        tok = self._current()
        if tok.type == TokenType.EQUAL:
            return "=="
        if tok.type == TokenType.UNKNOWN and tok.value in OPERATOR_CHARS:
            if tok.value == "!" and self._peek_next().type == TokenType.ASSIGN:
                return "!="
            return tok.value
        return None

    def _consume_operator(self, op: str) -> None:
        self._advance()
        if op == "!=":
            self._advance()

    # -------------------------------------------------------------------
    # Top-level
    # -------------------------------------------------------------------

    def parse_item(self) -> Optional[Item]:
        """Parse the next top-level item, or return None at end of input."""
        tt = self._peek()
        if tt == TokenType.EOF:
            return None
        if tt == TokenType.FUN:
            return self._parse_function()
        if tt == TokenType.EXTERN:
            return self._parse_extern()
        return self._parse_statement()

    def parse(self) -> Program:
        items: list[Item] = []
        item = self.parse_item()
        while item is not None:
            items.append(item)
            item = self.parse_item()
        return Program(items=items, filename=self.filename)

    def _parse_function(self) -> Function:
        loc = self._loc()
        self._expect(TokenType.FUN)
        proto = self._parse_prototype()
        body = self._parse_block()
        return Function(proto=proto, body=body, location=loc)

    def _parse_extern(self) -> Extern:
        loc = self._loc()
        self._expect(TokenType.EXTERN)
        proto = self._parse_prototype()
        return Extern(proto=proto, location=loc)

    # -------------------------------------------------------------------
    # Prototypes
    # -------------------------------------------------------------------

    def _parse_prototype(self) -> Prototype:
        loc = self._loc()
        name = self._parse_function_name()
        self._expect(TokenType.LPAREN)
        params: list[Parameter] = []
        if self._peek() != TokenType.RPAREN:
            params.append(self._parse_parameter())
            while self._match_char(","):
                params.append(self._parse_parameter())
        self._expect(TokenType.RPAREN)

        return_type = "Void"
        if self._match_char(":"):
            return_type = self._expect(TokenType.IDENT).value

        return Prototype(name=name, params=params, return_type=return_type, location=loc)

    def _parse_function_name(self) -> str:
        name = self._expect(TokenType.IDENT).value
        if name in OVERLOAD_PREFIXES:
            op = self._peek_operator()
            if op is None:
                raise self._error(f"Expected an operator after '{name}'")
            self._consume_operator(op)
            name += op
        return name

    def _parse_parameter(self) -> Parameter:
        loc = self._loc()
        name = self._expect(TokenType.IDENT).value
        self._expect_char(":")
        type_name = self._expect(TokenType.IDENT).value
        return Parameter(name=name, type_name=type_name, location=loc)

    # -------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------

    def _parse_block(self) -> Block:
        loc = self._loc()
        self._expect(TokenType.LBRACE)
        stmts: list[Statement] = []
        while self._peek() not in (TokenType.RBRACE, TokenType.EOF):
            stmts.append(self._parse_statement())
        self._expect(TokenType.RBRACE)
        return Block(statements=stmts, location=loc)

    def _parse_statement(self) -> Statement:
        tt = self._peek()

        if tt == TokenType.RETURN:
            return self._parse_return()
        if tt == TokenType.IF:
            return self._parse_if()
        if tt == TokenType.FOR:
            return self._parse_loop()
        if tt == TokenType.LBRACE:
            return self._parse_block()
        if tt == TokenType.IDENT and self._peek_next().type == TokenType.ASSIGN:
            return self._parse_binding()
        return self._parse_expression()

    def _parse_return(self) -> Return:
        loc = self._loc()
        self._expect(TokenType.RETURN)
        value: Optional[Expr] = None
        if self._peek() not in (TokenType.RBRACE, TokenType.EOF):
            value = self._parse_expression()
        return Return(value=value, location=loc)

    def _parse_binding(self) -> Binding:
        loc = self._loc()
        name = self._expect(TokenType.IDENT).value
        self._expect(TokenType.ASSIGN)
        value = self._parse_expression()
        return Binding(name=name, value=value, location=loc)

    def _parse_if(self) -> If:
        loc = self._loc()
        self._expect(TokenType.IF)
        condition = self._parse_expression()
        then_block = self._parse_block()

        else_ifs: list[ElseIf] = []
        else_block: Optional[Block] = None
        while self._match(TokenType.ELSE):
            if self._peek() == TokenType.IF:
                elif_loc = self._loc()
                self._advance()
                elif_cond = self._parse_expression()
                elif_block = self._parse_block()
                else_ifs.append(ElseIf(condition=elif_cond, block=elif_block, location=elif_loc))
            else:
                else_block = self._parse_block()
                break

        return If(condition=condition, then_block=then_block, else_ifs=else_ifs,
                  else_block=else_block, location=loc)

    def _parse_loop(self) -> Loop:
        loc = self._loc()
        self._expect(TokenType.FOR)

        if self._peek() == TokenType.IDENT:
            nxt = self._peek_next()
            if nxt.type == TokenType.IN:
                element = self._advance().value
                self._advance()
                return self._finish_for_in(loc, "", element)
            if nxt.type == TokenType.UNKNOWN and nxt.value == ",":
                index = self._advance().value
                self._advance()
                element = self._expect(TokenType.IDENT).value
                self._expect(TokenType.IN)
                return self._finish_for_in(loc, index, element)

        condition = self._parse_expression()
        body = self._parse_block()
        return Loop(condition=condition, body=body, location=loc)

    def _finish_for_in(self, loc: SourceLocation, index: str, element: str) -> Loop:
        sequence = self._parse_expression()
        body = self._parse_block()
        return Loop(condition=sequence, body=body, is_for_in=True,
                    index_name=index, element_name=element, location=loc)

    # -------------------------------------------------------------------
    # Expressions (precedence climbing)
    # -------------------------------------------------------------------

    def _parse_expression(self) -> Expr:
        lhs = self._parse_unary()
        return self._parse_binary_rhs(0, lhs)

    def _binary_precedence(self) -> int:
        op = self._peek_operator()
        if op is None:
            return -1
        return BINARY_PRECEDENCE.get(op, -1)

    def _parse_binary_rhs(self, min_prec: int, lhs: Expr) -> Expr:
        while True:
            prec = self._binary_precedence()
            if prec < 0 or prec < min_prec:
                return lhs

            loc = self._loc()
            op = self._peek_operator()
            self._consume_operator(op)
            rhs = self._parse_unary()

            if prec < self._binary_precedence():
                rhs = self._parse_binary_rhs(prec + 1, rhs)

            lhs = Binary(op=op, lhs=lhs, rhs=rhs, location=loc)

    def _parse_unary(self) -> Expr:
        op = self._peek_operator()
        if op is not None and op in OPERATOR_CHARS:
            loc = self._loc()
            self._consume_operator(op)
            operand = self._parse_unary()
            return Unary(op=op, operand=operand, location=loc)
        return self._parse_primary()

    def _parse_primary(self) -> Expr:
        tok = self._current()
        tt = tok.type
        loc = tok.location

        if tt == TokenType.NUMBER:
            self._advance()
            return NumberLiteral(value=tok.number, is_integer=not tok.is_float, location=loc)

        if tt == TokenType.STRING:
            self._advance()
            return StringLiteral(value=tok.value, location=loc)

        if tt == TokenType.TRUE:
            self._advance()
            return BoolLiteral(value=True, location=loc)

        if tt == TokenType.FALSE:
            self._advance()
            return BoolLiteral(value=False, location=loc)

        if tt == TokenType.IDENT:
            self._advance()
            return self._parse_identifier_expr(tok.value, loc)

        if tt == TokenType.LPAREN:
            self._advance()
            expr = self._parse_expression()
            self._expect(TokenType.RPAREN)
            return expr

        if self._is_char("["):
            return self._parse_sequence_literal()

        raise self._error(f"Unexpected token '{tok.value}' ({tt.name})")

    def _parse_identifier_expr(self, name: str, loc: SourceLocation) -> Union[Variable, Call]:
        if name in OVERLOAD_PREFIXES:
            op = self._peek_operator()
            if op is not None:
                self._consume_operator(op)
                name += op

        if self._peek() != TokenType.LPAREN:
            return Variable(name=name, location=loc)

        self._advance()
        args: list[Expr] = []
        if self._peek() != TokenType.RPAREN:
            args.append(self._parse_expression())
            while self._match_char(","):
                args.append(self._parse_expression())
        self._expect(TokenType.RPAREN)
        return Call(callee=name, args=args, location=loc)

    def _parse_sequence_literal(self) -> SequenceLiteral:
        loc = self._loc()
        self._expect_char("[")
        elements: list[Expr] = []
        if not self._is_char("]"):
            elements.append(self._parse_expression())
            while self._match_char(","):
                elements.append(self._parse_expression())
        self._expect_char("]")
        return SequenceLiteral(elements=elements, location=loc)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse(source: Union[str, bytes], filename: str = "<stdin>") -> Program:
    """Parse Novum source code into an AST."""
    return Parser(Lexer(source, filename)).parse()
