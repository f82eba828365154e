"""
Парсер шаблонов.

Преобразует поток токенов в AST: рекурсивный спуск для блочных
конструкций и подъём по приоритетам (precedence climbing) для выражений.

Структурные проблемы (непарные блоки, лишние ветки, неожиданные токены)
накапливаются в self.diagnostics, разбор продолжается по принципу
best-effort. Исключение ParseError бросается только при исчерпании
потока внутри _consume и при превышении максимальной глубины.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Set, Tuple

from .diagnostics import Diagnostic, DiagnosticKind, Severity
from .errors import ParseError
from .nodes import (
    ArrayAccessNode,
    BlockDefNode,
    BlockNode,
    CommentNode,
    ElseIfClause,
    ExpressionNode,
    ExtendsNode,
    FilterNode,
    ForNode,
    FunctionCallNode,
    IdentifierNode,
    IfNode,
    IncludeNode,
    LiteralNode,
    Node,
    NodeType,
    PropertyAccessNode,
    TemplateNode,
    TextNode,
    VariableNode,
    WhileNode,
)
from .recognizer import CLAUSE_KEYWORDS, IDENT, block_end_for, operator_precedence
from .tokens import Token, TokenKind, TokenStream

logger = logging.getLogger(__name__)

_LOOP_NAME_RE = re.compile(IDENT)

DEFAULT_MAX_DEPTH = 100


class TemplateParser:
    """
    Рекурсивный парсер для шаблонов.

    Обрабатывает последовательность токенов одним курсором без возвратов
    и строит дерево TemplateNode.
    """

    def __init__(self, tokens: List[Token], *, max_depth: int = DEFAULT_MAX_DEPTH):
        self.stream = TokenStream(tokens)
        self.max_depth = max_depth
        self.diagnostics: List[Diagnostic] = []
        self._depth = 0
        self._open_blocks: List[str] = []
        self._variables: List[str] = []
        self._functions: List[str] = []
        self._blocks: List[str] = []

    def parse(self) -> TemplateNode:
        """
        Парсит всю последовательность токенов.

        Returns:
            Корень AST

        Raises:
            ParseError: При исчерпании потока или превышении глубины
        """
        children: List[Node] = []

        while self.stream.has_next():
            node = self._parse_node()
            if node is not None:
                children.append(node)

        logger.debug(
            f"Built AST with {len(children)} top-level nodes, "
            f"{len(self.diagnostics)} diagnostics"
        )
        return TemplateNode(
            children_nodes=children,
            variables=list(self._variables),
            functions=list(self._functions),
            blocks=list(self._blocks),
        )

    # ---------- узлы ----------

    def _parse_node(self) -> Optional[Node]:
        """
        Парсит один узел в текущей позиции.

        Возвращает None, если токен был пропущен с диагностикой.
        """
        token = self._current_token()

        if token.kind in (TokenKind.TEXT, TokenKind.WHITESPACE, TokenKind.NEWLINE):
            self._consume()
            return TextNode(text=token.text, span=token.span)

        if token.kind == TokenKind.VARIABLE:
            self._consume()
            return self._parse_variable(token)

        if token.kind == TokenKind.COMMENT:
            self._consume()
            return CommentNode(text=token.metadata.get("content", ""), span=token.span)

        if token.kind == TokenKind.BLOCK_START:
            if token.text in CLAUSE_KEYWORDS:
                self._consume()
                self._report(DiagnosticKind.MISPLACED_CLAUSE, f"'{token.text}' outside of an if block", token)
                return None
            return self._parse_block()

        if token.kind == TokenKind.BLOCK_END:
            self._consume()
            self._report(
                DiagnosticKind.UNMATCHED_BLOCK_END,
                f"Unexpected '{token.text}' without matching block",
                token,
            )
            return None

        self._consume()
        self._report(DiagnosticKind.UNEXPECTED_TOKEN, f"Unexpected token: {token.kind.name}", token)
        return None

    def _parse_variable(self, token: Token) -> VariableNode:
        """Парсит интерполяцию {{ expr | filter:arg }}."""
        expression_tokens = token.metadata.get("expression", [])
        head = [t for t in expression_tokens if t.kind != TokenKind.FILTER]
        filters = [t for t in expression_tokens if t.kind == TokenKind.FILTER]

        expression: Optional[Node] = None
        if head:
            expression = self.parse_expression(head)
        else:
            self._report(DiagnosticKind.EMPTY_INTERPOLATION, "Empty variable interpolation", token)

        filter_nodes = [
            FilterNode(
                name=f.metadata["name"],
                args=[self.parse_expression(arg) for arg in f.metadata.get("args", []) if arg],
                span=f.span,
            )
            for f in filters
        ]
        return VariableNode(name=token.text, expression=expression, filters=filter_nodes, span=token.span)

    def _parse_block(self) -> Optional[Node]:
        """
        Диспетчер блочных конструкций по ключевому слову.
        """
        token = self._consume(TokenKind.BLOCK_START)
        keyword = token.text

        with self._nested(token):
            if keyword == "if":
                return self._parse_if(token)
            if keyword in ("for", "each"):
                return self._parse_for(token)
            if keyword == "while":
                condition = self._parse_condition(token)
                body, _ = self._parse_body(token)
                return WhileNode(condition=condition, body=body, span=token.span)
            if keyword == "unless":
                condition = self._parse_condition(token)
                body, _ = self._parse_body(token)
                return BlockNode(block_type="unless", condition=condition, body=body, span=token.span)
            if keyword == "block":
                return self._parse_block_def(token)
            if keyword == "include":
                return IncludeNode(path=self._parse_condition(token), span=token.span)
            if keyword == "extends":
                return self._parse_extends(token)

        self._report(DiagnosticKind.INVALID_TAG, f"Unknown tag '{keyword}'", token)
        return None

    def _parse_body(self, opener: Token, terminators: Set[str] = frozenset()) -> Tuple[List[Node], Optional[Token]]:
        """
        Парсит тело блока до закрывающего тега.

        Args:
            opener: Открывающий токен блока
            terminators: Ключевые слова веток (elseif/else), завершающие тело

        Returns:
            (тело, токен остановки). Закрывающий тег поглощается, ветка - нет.
            Токен остановки None, если блок остался незакрытым.
        """
        end_keyword = block_end_for(opener.text)
        outer_ends = {block_end_for(k) for k in self._open_blocks[:-1]}
        body: List[Node] = []

        while True:
            token = self._current_token()

            if token.kind == TokenKind.EOF:
                self._report(DiagnosticKind.UNMATCHED_BLOCK_START, f"Unclosed '{opener.text}' block", opener)
                return body, None

            if token.kind == TokenKind.BLOCK_END:
                if token.text == end_keyword:
                    self._consume()
                    return body, token
                if token.text in outer_ends:
                    # Закрывает внешний блок: текущий остаётся незакрытым
                    self._report(DiagnosticKind.UNMATCHED_BLOCK_START, f"Unclosed '{opener.text}' block", opener)
                    return body, None
                self._consume()
                self._report(
                    DiagnosticKind.UNMATCHED_BLOCK_END,
                    f"Unexpected '{token.text}' without matching block",
                    token,
                )
                continue

            if token.kind == TokenKind.BLOCK_START and token.text in CLAUSE_KEYWORDS:
                if token.text in terminators:
                    return body, token
                self._consume()
                where = "after 'else'" if opener.text == "if" else "outside of an if block"
                self._report(DiagnosticKind.MISPLACED_CLAUSE, f"'{token.text}' {where}", token)
                continue

            node = self._parse_node()
            if node is not None:
                body.append(node)

    def _parse_if(self, opener: Token) -> IfNode:
        """
        if cond ... (elseif cond ...)* (else ...)? endif
        """
        condition = self._parse_condition(opener)
        branches = {"elseif", "else"}
        body, stop = self._parse_body(opener, branches)

        elseif_blocks: List[ElseIfClause] = []
        while stop is not None and stop.kind == TokenKind.BLOCK_START and stop.text == "elseif":
            self._consume()
            clause_condition = self._parse_condition(stop)
            clause_body, next_stop = self._parse_body(opener, branches)
            elseif_blocks.append(ElseIfClause(condition=clause_condition, body=clause_body, span=stop.span))
            stop = next_stop

        else_body: List[Node] = []
        if stop is not None and stop.kind == TokenKind.BLOCK_START and stop.text == "else":
            self._consume()
            else_body, _ = self._parse_body(opener)

        return IfNode(
            condition=condition,
            body=body,
            else_body=else_body,
            elseif_blocks=elseif_blocks,
            span=opener.span,
        )

    def _parse_for(self, opener: Token) -> ForNode:
        """
        for item in expr / for item, index in expr

        Некорректная форма даёт диагностику и заглушку for item in items,
        тело при этом всё равно разбирается.
        """
        target = opener.metadata.get("target")
        names = [n.strip() for n in target.split(",")] if target else []
        iterable_tokens = opener.metadata.get("condition_tokens", [])

        valid = (
            1 <= len(names) <= 2
            and all(_LOOP_NAME_RE.fullmatch(n) for n in names)
            and bool(iterable_tokens)
        )

        if valid:
            variable = names[0]
            index_alias = names[1] if len(names) == 2 else None
            iterable = self.parse_expression(iterable_tokens)
            iterable_text = opener.metadata.get("iterable") or ""
        else:
            self._report(
                DiagnosticKind.INVALID_FOR,
                f"Invalid for loop syntax: '{opener.metadata.get('condition', '')}'",
                opener,
            )
            variable, index_alias = "item", None
            iterable = IdentifierNode(name="items", span=opener.span)
            iterable_text = "items"

        body, _ = self._parse_body(opener)
        return ForNode(
            block_type=opener.text,
            condition=iterable,
            body=body,
            variable=variable,
            index_alias=index_alias,
            iterable_text=iterable_text,
            span=opener.span,
        )

    def _parse_block_def(self, opener: Token) -> BlockDefNode:
        name = opener.metadata.get("condition", "").strip().strip("'\"")
        if not name:
            self._report(DiagnosticKind.INVALID_TAG, "Block name is required", opener)
        if name and name not in self._blocks:
            self._blocks.append(name)
        body, _ = self._parse_body(opener)
        return BlockDefNode(name=name, body=body, span=opener.span)

    def _parse_extends(self, opener: Token) -> ExtendsNode:
        """
        extends "parent" и следующие за ним определения блоков.

        Пустой текст и комментарии между блоками пропускаются.
        """
        parent = self._parse_condition(opener)
        blocks: Dict[str, BlockDefNode] = {}

        while self.stream.has_next():
            token = self._current_token()
            if token.kind in (TokenKind.TEXT, TokenKind.WHITESPACE, TokenKind.NEWLINE) and not token.text.strip():
                self._consume()
                continue
            if token.kind == TokenKind.COMMENT:
                self._consume()
                continue
            if token.kind == TokenKind.BLOCK_START and token.text == "block":
                self._consume()
                with self._nested(token):
                    block = self._parse_block_def(token)
                blocks[block.name] = block
                continue
            break

        return ExtendsNode(parent=parent, blocks=blocks, span=opener.span)

    def _parse_condition(self, token: Token) -> Node:
        tokens = token.metadata.get("condition_tokens", [])
        if not tokens:
            self._report(DiagnosticKind.UNEXPECTED_TOKEN, f"Missing expression in '{token.text}'", token)
            return LiteralNode(value=None, literal_type="null", span=token.span)
        return self.parse_expression(tokens)

    # ---------- выражения ----------

    def parse_expression(self, tokens: List[Token]) -> Node:
        """
        Парсит плоский список подтокенов в дерево выражения.
        """
        return self._parse_expression_tokens(tokens, 0)

    def _parse_expression_tokens(self, tokens: List[Token], floor: int) -> Node:
        """
        Подъём по приоритетам.

        Справа налево ищется оператор с наименьшим приоритетом не ниже
        floor (при равенстве выигрывает самый левый), список делится по нему.
        Левая часть разбирается с floor=0, правая - с floor, равным
        приоритету выбранного оператора, что даёт правую ассоциативность.
        """
        if not tokens:
            return LiteralNode(value=None, literal_type="null")

        with self._nested(tokens[0]):
            if len(tokens) == 1:
                return self._parse_atomic(tokens[0])

            operator_index = -1
            lowest = None
            for index in range(len(tokens) - 1, -1, -1):
                token = tokens[index]
                if token.kind != TokenKind.OPERATOR:
                    continue
                if token.text == "-" and (index == 0 or tokens[index - 1].kind == TokenKind.OPERATOR):
                    # Префиксный минус принадлежит своему операнду
                    continue
                precedence = operator_precedence(token.text)
                if (lowest is None or precedence <= lowest) and precedence >= floor:
                    lowest = precedence
                    operator_index = index

            if operator_index == -1:
                head = tokens[0]
                if head.kind == TokenKind.OPERATOR and head.text == "-":
                    # Унарный минус: 0 - x
                    return ExpressionNode(
                        operator="-",
                        left=LiteralNode(value=0, literal_type="number", span=head.span),
                        right=self._parse_expression_tokens(tokens[1:], floor),
                        span=head.span,
                    )
                return self._parse_complex(tokens)

            operator = tokens[operator_index]
            left_tokens = tokens[:operator_index]
            right_tokens = tokens[operator_index + 1:]

            if left_tokens:
                left = self._parse_expression_tokens(left_tokens, 0)
            else:
                self._report(DiagnosticKind.UNEXPECTED_TOKEN, f"Missing left operand for '{operator.text}'", operator)
                left = LiteralNode(value=None, literal_type="null", span=operator.span)

            if not right_tokens:
                self._report(DiagnosticKind.UNEXPECTED_TOKEN, f"Missing right operand for '{operator.text}'", operator)
            right = self._parse_expression_tokens(right_tokens, operator_precedence(operator.text))

            return ExpressionNode(operator=operator.text, left=left, right=right, span=operator.span)

    def _parse_complex(self, tokens: List[Token]) -> Node:
        """
        Несколько токенов без операторов: вызов функции или ошибка.
        """
        functions = [t for t in tokens if t.kind == TokenKind.FUNCTION]
        if functions:
            primary = functions[0]
        else:
            primary = tokens[0]
        for extra in tokens:
            if extra is not primary:
                self._report(DiagnosticKind.UNEXPECTED_TOKEN, f"Unexpected token in expression: {extra.text!r}", extra)
                break
        return self._parse_atomic(primary)

    def _parse_atomic(self, token: Token) -> Node:
        """Одиночный токен: литерал, идентификатор, аксессор или вызов."""
        if token.kind == TokenKind.LITERAL:
            return LiteralNode(
                value=token.metadata.get("value"),
                literal_type=token.metadata.get("type", "string"),
                span=token.span,
            )

        if token.kind == TokenKind.IDENTIFIER:
            self._note(self._variables, token.text)
            return IdentifierNode(name=token.text, span=token.span)

        if token.kind in (TokenKind.PROPERTY_ACCESS, TokenKind.ARRAY_ACCESS):
            base = token.metadata["base"]
            self._note(self._variables, base)
            node: Node = IdentifierNode(name=base, span=token.span)
            for kind, value in token.metadata.get("segments", []):
                if kind == "property":
                    node = PropertyAccessNode(object=node, property=value, span=token.span)
                else:
                    node = ArrayAccessNode(array=node, index=self.parse_expression(value), span=token.span)
            return node

        if token.kind == TokenKind.FUNCTION:
            name = token.metadata["name"]
            self._note(self._functions, name)
            args = [self.parse_expression(arg) for arg in token.metadata.get("args", []) if arg]
            return FunctionCallNode(name=name, args=args, span=token.span)

        self._report(DiagnosticKind.UNEXPECTED_TOKEN, f"Unexpected token in expression: {token.text!r}", token)
        return LiteralNode(value=None, literal_type="null", span=token.span)

    # ---------- вспомогательные методы ----------

    @contextmanager
    def _nested(self, token: Token) -> Iterator[None]:
        """
        Учитывает глубину вложенности блоков и выражений (общий лимит).
        """
        self._depth += 1
        is_block = token.kind == TokenKind.BLOCK_START
        if is_block:
            self._open_blocks.append(token.text)
        try:
            if self._depth > self.max_depth:
                self._report(DiagnosticKind.MAX_DEPTH, f"Maximum nesting depth {self.max_depth} exceeded", token)
                raise ParseError(
                    f"Maximum nesting depth {self.max_depth} exceeded at {token.line}:{token.column}",
                    token.span.start,
                )
            yield
        finally:
            self._depth -= 1
            if is_block:
                self._open_blocks.pop()

    def _current_token(self) -> Token:
        token = self.stream.peek()
        if token is None:
            raise ParseError("Unexpected end of template", self._end_position())
        return token

    def _consume(self, kind: Optional[TokenKind] = None) -> Token:
        token = self.stream.next()
        if token is None or token.kind == TokenKind.EOF:
            raise ParseError("Unexpected end of template", self._end_position())
        if kind is not None and token.kind != kind:
            raise ParseError(
                f"Expected {kind.name}, got {token.kind.name} at {token.line}:{token.column}",
                token.span.start,
            )
        return token

    def _end_position(self) -> Optional[int]:
        if self.stream.tokens:
            return self.stream.tokens[-1].span.end
        return None

    def _report(self, kind: DiagnosticKind, message: str, token: Token) -> None:
        self.diagnostics.append(Diagnostic(
            kind=kind,
            message=message,
            position=token.span.start,
            line=token.line,
            column=token.column,
            source="parser",
        ))

    @staticmethod
    def _note(names: List[str], name: str) -> None:
        if name not in names:
            names.append(name)


# ---------- анализ готового дерева ----------

def statistics(ast: Node) -> Dict[str, object]:
    """
    Статистика по дереву: количество узлов по типам и глубина.
    """
    counts: Dict[str, int] = {}

    def count(node: Node) -> None:
        counts[node.get_type().value] = counts.get(node.get_type().value, 0) + 1

    ast.visit(count)

    stats: Dict[str, object] = {
        "total_nodes": sum(counts.values()),
        "by_type": counts,
        "max_depth": _depth(ast),
    }
    if isinstance(ast, TemplateNode):
        stats["variables"] = list(ast.variables)
        stats["functions"] = list(ast.functions)
        stats["blocks"] = list(ast.blocks)
    return stats


def _depth(node: Node) -> int:
    children = node.children()
    if not children:
        return 1
    return 1 + max(_depth(child) for child in children)


_BLOCK_TYPES = (NodeType.BLOCK, NodeType.IF, NodeType.FOR, NodeType.WHILE, NodeType.BLOCK_DEF)


def validate(ast: Node) -> List[Diagnostic]:
    """
    Предупреждения по готовому дереву: блоки с пустым телом.
    """
    warnings: List[Diagnostic] = []

    def check(node: Node) -> None:
        if node.get_type() not in _BLOCK_TYPES:
            return
        body = getattr(node, "body", [])
        if body:
            return
        span = getattr(node, "span", None)
        label = getattr(node, "block_type", None) or getattr(node, "name", "block")
        warnings.append(Diagnostic(
            kind=DiagnosticKind.EMPTY_BLOCK,
            message=f"Empty '{label}' block",
            position=span.start if span else None,
            line=span.line if span else None,
            column=span.column if span else None,
            severity=Severity.WARNING,
            source="parser",
        ))

    ast.visit(check)
    return warnings


def dump(ast: Node) -> str:
    """Отладочная печать дерева."""
    return ast.to_debug_string()


def build_ast(tokens: List[Token], max_depth: int = DEFAULT_MAX_DEPTH) -> Tuple[TemplateNode, List[Diagnostic]]:
    """
    Удобная функция: дерево и диагностики парсера.
    """
    parser = TemplateParser(tokens, max_depth=max_depth)
    ast = parser.parse()
    return ast, parser.diagnostics


__all__ = [
    "TemplateParser",
    "DEFAULT_MAX_DEPTH",
    "statistics",
    "validate",
    "dump",
    "build_ast",
]
