"""
Лексический анализатор шаблонов.

Разбивает исходный текст на последовательность токенов, опираясь на
совпадения распознавателя: каждая конструкция верхнего уровня становится
одним токеном, а её содержимое раскладывается на подтокены в metadata.
"""

from __future__ import annotations

import bisect
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .diagnostics import Diagnostic, DiagnosticKind
from .recognizer import Match, SyntaxRecognizer
from .tokens import Span, Token, TokenKind

logger = logging.getLogger(__name__)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}
_ESCAPE_RE = re.compile(r"\\(.)", re.DOTALL)
_FOR_RE = re.compile(r"^(.+?)\s+in\s+(.+)$", re.DOTALL)
_TEXT_PIECE_RE = re.compile(r"\r?\n|[^\S\n]+|\S+")


def unescape(value: str) -> str:
    """Снимает обратные слэши в строковом литерале."""
    return _ESCAPE_RE.sub(lambda m: _ESCAPES.get(m.group(1), m.group(1)), value)


class _Cursor:
    """
    Курсор по исходному тексту, вычисляющий строку и колонку.

    Движется только вперёд; запрос смещения левее текущего перезапускает
    проход с ближайшего начала строки.
    """

    def __init__(self, text: str):
        self.text = text
        self._line_starts = [0]
        for index, char in enumerate(text):
            if char == "\n":
                self._line_starts.append(index + 1)
        self.offset = 0
        self.line = 1

    def locate(self, offset: int) -> Tuple[int, int]:
        if offset < self.offset:
            self.line = bisect.bisect_right(self._line_starts, offset)
        else:
            while self.line < len(self._line_starts) and self._line_starts[self.line] <= offset:
                self.line += 1
        self.offset = offset
        return self.line, offset - self._line_starts[self.line - 1] + 1

    def span(self, start: int, end: int) -> Span:
        line, column = self.locate(start)
        return Span(start, end, line, column)


@dataclass
class LexResult:
    tokens: List[Token]
    diagnostics: List[Diagnostic] = field(default_factory=list)


class TemplateLexer:
    """
    Лексический анализатор шаблонов.

    Режимы работы с текстом:
    - по умолчанию литеральный текст между конструкциями - один TEXT токен
    - preserve_whitespace: текст делится на TEXT / WHITESPACE / NEWLINE
    """

    def __init__(
        self,
        recognizer: Optional[SyntaxRecognizer] = None,
        *,
        preserve_whitespace: bool = False,
    ):
        self.recognizer = recognizer or SyntaxRecognizer()
        self.preserve_whitespace = preserve_whitespace
        self.diagnostics: List[Diagnostic] = []
        self._cursor: Optional[_Cursor] = None

    def tokenize(self, text: str) -> List[Token]:
        """
        Токенизирует весь исходный текст.

        Токены покрывают вход без перекрытий, последний токен - EOF.
        Нераспознанные символы внутри выражений попадают в self.diagnostics.
        """
        self.diagnostics = []
        self._cursor = _Cursor(text)
        tokens: List[Token] = []
        position = 0

        for construct in self.recognizer.recognize(text).constructs():
            if construct.start > position:
                tokens.extend(self._text_tokens(text[position:construct.start], position))
            tokens.append(self._construct_token(construct))
            position = construct.end

        if position < len(text):
            tokens.extend(self._text_tokens(text[position:], position))

        tokens.append(Token(TokenKind.EOF, "", self._cursor.span(len(text), len(text))))

        logger.debug(f"Tokenized text into {len(tokens)} tokens")
        return tokens

    def tokenize_with_diagnostics(self, text: str) -> LexResult:
        tokens = self.tokenize(text)
        return LexResult(tokens, list(self.diagnostics))

    # ---------- литеральный текст ----------

    def _text_tokens(self, chunk: str, base: int) -> List[Token]:
        if not self.preserve_whitespace:
            return [Token(TokenKind.TEXT, chunk, self._span(base, base + len(chunk)))]

        tokens: List[Token] = []
        for piece in _TEXT_PIECE_RE.finditer(chunk):
            value = piece.group(0)
            if value.endswith("\n"):
                kind = TokenKind.NEWLINE
            elif value.isspace():
                kind = TokenKind.WHITESPACE
            else:
                kind = TokenKind.TEXT
            start = base + piece.start()
            tokens.append(Token(kind, value, self._span(start, start + len(value))))
        return tokens

    # ---------- конструкции верхнего уровня ----------

    def _construct_token(self, construct: Match) -> Token:
        if construct.category == "variable":
            return self._variable_token(construct)
        if construct.category == "block_start":
            return self._block_start_token(construct)
        if construct.category == "block_end":
            keyword = construct.groups[0] or ""
            return Token(
                TokenKind.BLOCK_END,
                keyword,
                self._span(construct.start, construct.end),
                {"closes": keyword[len("end"):], "raw": construct.text},
            )
        if construct.category == "comment":
            return Token(
                TokenKind.COMMENT,
                construct.text,
                self._span(construct.start, construct.end),
                {"content": (construct.groups[0] or "").strip()},
            )
        # Неизвестный тег выводится как текст, диагностику даёт распознаватель
        return Token(TokenKind.TEXT, construct.text, self._span(construct.start, construct.end))

    def _variable_token(self, construct: Match) -> Token:
        span = self._span(construct.start, construct.end)
        inner = construct.groups[0] or ""
        inner_base = construct.start + 2

        filters = self.recognizer.scan_filters(inner, inner_base)
        head_end = filters[0].start - inner_base if filters else len(inner)
        head = inner[:head_end]

        expression = self.tokenize_expression(head, inner_base)
        expression.extend(self._filter_token(f) for f in filters)

        return Token(TokenKind.VARIABLE, head.strip(), span, {
            "expression": expression,
            "raw": construct.text,
        })

    def _filter_token(self, match: Match) -> Token:
        span = self._span(match.start, match.end)
        args = [self.tokenize_expression(text, offset) for text, offset in match.extra.get("args", [])]
        garbage = match.extra.get("garbage")
        if garbage:
            self._report(
                DiagnosticKind.UNEXPECTED_TOKEN,
                f"Unexpected text after filter '{match.groups[0]}': {garbage}",
                match.start,
            )
        return Token(TokenKind.FILTER, match.text, span, {"name": match.groups[0], "args": args})

    def _block_start_token(self, construct: Match) -> Token:
        span = self._span(construct.start, construct.end)
        keyword = construct.groups[0] or ""
        condition = construct.groups[1] or ""
        offset = construct.extra["group_starts"][1]
        metadata: Dict[str, Any] = {"condition": condition, "raw": construct.text}

        if keyword in ("for", "each"):
            loop = _FOR_RE.match(condition)
            if loop:
                metadata["target"] = loop.group(1).strip()
                metadata["iterable"] = loop.group(2).strip()
                metadata["condition_tokens"] = self.tokenize_expression(
                    loop.group(2), offset + loop.start(2)
                )
            else:
                metadata["target"] = None
                metadata["iterable"] = None
                metadata["condition_tokens"] = []
        elif condition:
            metadata["condition_tokens"] = self.tokenize_expression(condition, offset)
        else:
            metadata["condition_tokens"] = []

        return Token(TokenKind.BLOCK_START, keyword, span, metadata)

    # ---------- выражения ----------

    def tokenize_expression(self, expression: str, base: int = 0) -> List[Token]:
        """
        Раскладывает выражение на подтокены с абсолютными позициями.

        Перекрытия между категориями разрешаются приоритетом: строки,
        функции и аксессоры (внешний раньше вложенного), затем ключевые
        литералы, числа, операторы, идентификаторы.
        """
        recognized = self.recognizer.recognize_expression(expression, base)

        selected: List[Match] = []
        claimed: List[Tuple[int, int]] = []
        for match in recognized.by_priority():
            if any(match.start < end and start < match.end for start, end in claimed):
                continue
            claimed.append((match.start, match.end))
            selected.append(match)
        selected.sort(key=lambda m: m.start)

        self._report_unrecognized(expression, base, claimed)

        tokens = [self._expression_token(m) for m in selected]
        return _fold_negative_numbers(tokens)

    def _expression_token(self, match: Match) -> Token:
        span = self._span(match.start, match.end)
        category = match.category

        if category == "string":
            return Token(TokenKind.LITERAL, match.text, span, {
                "value": unescape(match.groups[1] or ""),
                "type": "string",
            })

        if category == "number":
            value: Any = float(match.text) if "." in match.text else int(match.text)
            return Token(TokenKind.LITERAL, match.text, span, {"value": value, "type": "number"})

        if category == "keyword_literal":
            if match.text == "null":
                return Token(TokenKind.LITERAL, match.text, span, {"value": None, "type": "null"})
            return Token(TokenKind.LITERAL, match.text, span, {
                "value": match.text == "true",
                "type": "boolean",
            })

        if category == "operator":
            return Token(TokenKind.OPERATOR, match.text, span)

        if category == "function":
            args = [self.tokenize_expression(text, offset) for text, offset in match.extra["args"]]
            return Token(TokenKind.FUNCTION, match.text, span, {"name": match.groups[0], "args": args})

        if category == "accessor":
            segments: List[Tuple[str, Any]] = []
            for kind, value, offset in match.extra["segments"]:
                if kind == "property":
                    segments.append(("property", value))
                else:
                    segments.append(("index", self.tokenize_expression(value, offset)))
            token_kind = TokenKind.ARRAY_ACCESS if match.groups[1] == "array" else TokenKind.PROPERTY_ACCESS
            return Token(token_kind, match.text, span, {"base": match.groups[0], "segments": segments})

        return Token(TokenKind.IDENTIFIER, match.text, span, {"name": match.text})

    def _report_unrecognized(self, expression: str, base: int, claimed: Sequence[Tuple[int, int]]) -> None:
        covered = [False] * len(expression)
        for start, end in claimed:
            for index in range(start - base, end - base):
                if 0 <= index < len(covered):
                    covered[index] = True

        for index, char in enumerate(expression):
            if covered[index] or char.isspace():
                continue
            self._report(
                DiagnosticKind.UNEXPECTED_CHARACTER,
                f"Unexpected character in expression: {char!r}",
                base + index,
            )

    # ---------- служебное ----------

    def _span(self, start: int, end: int) -> Span:
        if self._cursor is None:
            return Span(start, end)
        return self._cursor.span(start, end)

    def _report(self, kind: DiagnosticKind, message: str, position: int) -> None:
        line = column = None
        if self._cursor is not None:
            line, column = self._cursor.locate(position)
        self.diagnostics.append(Diagnostic(kind, message, position, line, column, source="lexer"))


def _fold_negative_numbers(tokens: List[Token]) -> List[Token]:
    """
    Склеивает '-' с числом, если минус стоит в префиксной позиции
    (в начале выражения или после другого оператора).
    """
    result: List[Token] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        following = tokens[index + 1] if index + 1 < len(tokens) else None
        prefix = not result or result[-1].kind == TokenKind.OPERATOR
        if (
            token.kind == TokenKind.OPERATOR
            and token.text == "-"
            and prefix
            and following is not None
            and following.kind == TokenKind.LITERAL
            and following.metadata.get("type") == "number"
        ):
            result.append(Token(
                TokenKind.LITERAL,
                "-" + following.text,
                Span(token.span.start, following.span.end, token.span.line, token.span.column),
                {"value": -following.metadata["value"], "type": "number"},
            ))
            index += 2
            continue
        result.append(token)
        index += 1
    return result


def statistics(tokens: Sequence[Token]) -> Dict[str, Any]:
    """Количество токенов по видам."""
    by_kind: Dict[str, int] = {}
    for token in tokens:
        by_kind[token.kind.value] = by_kind.get(token.kind.value, 0) + 1
    return {"total": len(tokens), "by_kind": by_kind}


def tokens_by_kind(tokens: Sequence[Token], kind: TokenKind) -> List[Token]:
    return [t for t in tokens if t.kind == kind]


def tokenize_template(text: str, preserve_whitespace: bool = False) -> List[Token]:
    """
    Удобная функция для токенизации шаблона.

    Args:
        text: Исходный текст шаблона
        preserve_whitespace: Делить текст на TEXT / WHITESPACE / NEWLINE

    Returns:
        Список токенов, заканчивающийся EOF
    """
    lexer = TemplateLexer(preserve_whitespace=preserve_whitespace)
    return lexer.tokenize(text)


__all__ = [
    "TemplateLexer",
    "LexResult",
    "statistics",
    "tokens_by_kind",
    "tokenize_template",
    "unescape",
]
