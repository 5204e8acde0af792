"""Lexical symbol scope for code generation.

One ``SymbolScope`` lives for one function's lowering. Every nested block
and every loop pushes a frame; popping it restores exactly the bindings
that were visible before, so loop variables shadow outer names only for
the span of the loop body.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional


class SymbolScope:
    """Stack of name -> value frames, innermost last."""

    def __init__(self) -> None:
        self._frames: list[dict[str, Any]] = [{}]

    def push(self, bindings: Optional[dict[str, Any]] = None) -> None:
        self._frames.append(dict(bindings or {}))

    def pop(self) -> None:
        if len(self._frames) == 1:
            raise RuntimeError("cannot pop the outermost scope frame")
        self._frames.pop()

    @contextmanager
    def frame(self, bindings: Optional[dict[str, Any]] = None) -> Iterator[SymbolScope]:
        self.push(bindings)
        try:
            yield self
        finally:
            self.pop()

    def define(self, name: str, value: Any) -> None:
        self._frames[-1][name] = value

    def lookup(self, name: str) -> Optional[Any]:
        for frame in reversed(self._frames):
            if name in frame:
                return frame[name]
        return None
