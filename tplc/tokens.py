"""
Лексические типы шаблонизатора.

Определяет виды токенов, позиционную информацию и сам токен.
Токены неизменяемы после создания и принадлежат потоку токенов.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class TokenKind(enum.Enum):
    """Виды токенов в шаблоне."""

    # Текстовый контент
    TEXT = "TEXT"

    # Конструкции верхнего уровня
    VARIABLE = "VARIABLE"                # {{ ... }}
    BLOCK_START = "BLOCK_START"          # {% if ... %}
    BLOCK_END = "BLOCK_END"              # {% endif %}
    COMMENT = "COMMENT"                  # {# ... #}

    # Элементы выражений
    FILTER = "FILTER"                    # | name:arg
    FUNCTION = "FUNCTION"                # name(args)
    OPERATOR = "OPERATOR"                # == != < > <= >= && || + - * / %
    LITERAL = "LITERAL"                  # "str", 42, true, null
    IDENTIFIER = "IDENTIFIER"
    PROPERTY_ACCESS = "PROPERTY_ACCESS"  # obj.prop
    ARRAY_ACCESS = "ARRAY_ACCESS"        # arr[index]

    # Служебные токены
    WHITESPACE = "WHITESPACE"
    NEWLINE = "NEWLINE"
    EOF = "EOF"


@dataclass(frozen=True)
class Span:
    """
    Позиция токена в исходном тексте.

    start/end - смещения (end не включается), line/column начинаются с 1.
    """
    start: int
    end: int
    line: int = 1
    column: int = 1

    def to_dict(self) -> Dict[str, int]:
        return {"start": self.start, "end": self.end, "line": self.line, "column": self.column}


@dataclass(frozen=True)
class Token:
    """
    Токен с позиционной информацией для точной диагностики ошибок.

    metadata хранит разобранное содержимое конструкции: подтокены
    выражений, аргументы фильтров и функций, исходный текст.
    """
    kind: TokenKind
    text: str
    span: Span
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def line(self) -> int:
        return self.span.line

    @property
    def column(self) -> int:
        return self.span.column

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "text": self.text,
            "span": self.span.to_dict(),
            "metadata": {key: _plain(value) for key, value in self.metadata.items()},
        }

    def __repr__(self) -> str:
        return f"Token({self.kind.name}, {self.text!r}, {self.span.line}:{self.span.column})"


def _plain(value: Any) -> Any:
    """Приводит метаданные к JSON-совместимому виду (подтокены -> dict)."""
    if isinstance(value, Token):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    return value


class TokenStream:
    """
    Курсор над списком токенов.

    Используется парсером: один проход, без отката назад.
    """

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.current = 0

    def peek(self) -> Optional[Token]:
        if self.current < len(self.tokens):
            return self.tokens[self.current]
        return None

    def next(self) -> Optional[Token]:
        token = self.peek()
        if token is not None:
            self.current += 1
        return token

    def has_next(self) -> bool:
        token = self.peek()
        return token is not None and token.kind != TokenKind.EOF

    @property
    def position(self) -> int:
        return self.current


__all__ = ["TokenKind", "Span", "Token", "TokenStream"]
