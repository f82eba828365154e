"""
AST-узлы шаблона.

Закрытый набор неизменяемых классов узлов с перечислением NodeType для
диспетчеризации. Родитель владеет дочерними узлами, обратных ссылок нет.
"""

from __future__ import annotations

import dataclasses
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .tokens import Span


class NodeType(enum.Enum):
    """Типы узлов AST."""
    TEMPLATE = "Template"
    TEXT = "Text"
    VARIABLE = "Variable"
    EXPRESSION = "Expression"
    LITERAL = "Literal"
    IDENTIFIER = "Identifier"
    PROPERTY_ACCESS = "PropertyAccess"
    ARRAY_ACCESS = "ArrayAccess"
    FUNCTION_CALL = "FunctionCall"
    FILTER = "Filter"
    BLOCK = "Block"
    IF = "If"
    ELSEIF = "ElseIf"
    FOR = "For"
    WHILE = "While"
    COMMENT = "Comment"
    INCLUDE = "Include"
    EXTENDS = "Extends"
    BLOCK_DEF = "BlockDef"


@dataclass(frozen=True)
class Node(ABC):
    """Базовый класс для всех узлов AST."""

    @abstractmethod
    def get_type(self) -> NodeType:
        """Возвращает тип узла."""
        pass

    def children(self) -> List[Node]:
        """Непосредственные дочерние узлы в порядке обхода."""
        return []

    def visit(self, callback: Callable[[Node], Any]) -> None:
        """Обход в глубину (pre-order)."""
        callback(self)
        for child in self.children():
            child.visit(callback)

    def label(self) -> str:
        return self.get_type().value

    def to_debug_string(self, indent: int = 0) -> str:
        lines = ["  " * indent + self.label()]
        for child in self.children():
            lines.append(child.to_debug_string(indent + 1))
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.get_type().value}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if f.name == "span":
                if value is not None:
                    data["span"] = value.to_dict()
                continue
            data[f.name] = _plain(value)
        return data


def _plain(value: Any) -> Any:
    if isinstance(value, Node):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    return value


# ---------- выражения ----------

@dataclass(frozen=True)
class LiteralNode(Node):
    """Литерал: строка, число, true/false или null."""
    value: Any
    literal_type: str = "string"
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.LITERAL

    def label(self) -> str:
        return f"Literal({self.value!r}: {self.literal_type})"


@dataclass(frozen=True)
class IdentifierNode(Node):
    name: str
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.IDENTIFIER

    def label(self) -> str:
        return f"Identifier({self.name})"


@dataclass(frozen=True)
class PropertyAccessNode(Node):
    """Доступ к свойству: object.property"""
    object: Node
    property: str
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.PROPERTY_ACCESS

    def children(self) -> List[Node]:
        return [self.object]

    def label(self) -> str:
        return f"PropertyAccess(.{self.property})"


@dataclass(frozen=True)
class ArrayAccessNode(Node):
    """Доступ по индексу: array[index]"""
    array: Node
    index: Node
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.ARRAY_ACCESS

    def children(self) -> List[Node]:
        return [self.array, self.index]


@dataclass(frozen=True)
class ExpressionNode(Node):
    """Бинарное выражение: left operator right"""
    operator: str
    left: Node
    right: Node
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.EXPRESSION

    def children(self) -> List[Node]:
        return [self.left, self.right]

    def label(self) -> str:
        return f"Expression({self.operator})"


@dataclass(frozen=True)
class FunctionCallNode(Node):
    name: str
    args: List[Node] = field(default_factory=list)
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.FUNCTION_CALL

    def children(self) -> List[Node]:
        return list(self.args)

    def label(self) -> str:
        return f"FunctionCall({self.name})"


@dataclass(frozen=True)
class FilterNode(Node):
    """Фильтр в цепочке: | name:arg1:arg2"""
    name: str
    args: List[Node] = field(default_factory=list)
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.FILTER

    def children(self) -> List[Node]:
        return list(self.args)

    def label(self) -> str:
        return f"Filter({self.name})"


# ---------- узлы шаблона ----------

@dataclass(frozen=True)
class TextNode(Node):
    """
    Обычный текстовый контент в шаблоне.

    Выводится в результат как есть.
    """
    text: str
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.TEXT

    def label(self) -> str:
        preview = self.text if len(self.text) <= 30 else self.text[:27] + "..."
        return f"Text({preview!r})"


@dataclass(frozen=True)
class VariableNode(Node):
    """
    Интерполяция {{ expression | filter ... }}.

    name - исходный текст выражения до первого фильтра.
    """
    name: str
    expression: Optional[Node]
    filters: List[FilterNode] = field(default_factory=list)
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.VARIABLE

    def children(self) -> List[Node]:
        nodes: List[Node] = [self.expression] if self.expression is not None else []
        nodes.extend(self.filters)
        return nodes

    def label(self) -> str:
        return f"Variable({self.name})"


@dataclass(frozen=True)
class CommentNode(Node):
    text: str
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.COMMENT


@dataclass(frozen=True)
class BlockNode(Node):
    """
    Обобщённый блок {% keyword condition %} ... {% endkeyword %}.

    Используется напрямую для unless; if/for/while - специализации.
    """
    block_type: str = "block"
    condition: Optional[Node] = None
    body: List[Node] = field(default_factory=list)
    else_body: List[Node] = field(default_factory=list)
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.BLOCK

    def children(self) -> List[Node]:
        nodes: List[Node] = [self.condition] if self.condition is not None else []
        nodes.extend(self.body)
        nodes.extend(self.else_body)
        return nodes

    def label(self) -> str:
        return f"Block({self.block_type})"


@dataclass(frozen=True)
class ElseIfClause(Node):
    condition: Node
    body: List[Node] = field(default_factory=list)
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.ELSEIF

    def children(self) -> List[Node]:
        return [self.condition, *self.body]


@dataclass(frozen=True)
class IfNode(BlockNode):
    """
    Условный блок: if, ноль или более elseif, необязательный else.
    """
    block_type: str = "if"
    elseif_blocks: List[ElseIfClause] = field(default_factory=list)

    def get_type(self) -> NodeType:
        return NodeType.IF

    def children(self) -> List[Node]:
        nodes: List[Node] = [self.condition] if self.condition is not None else []
        nodes.extend(self.body)
        nodes.extend(self.elseif_blocks)
        nodes.extend(self.else_body)
        return nodes

    def label(self) -> str:
        return f"If(elseif={len(self.elseif_blocks)}, else={bool(self.else_body)})"


@dataclass(frozen=True)
class ForNode(BlockNode):
    """
    Цикл: {% for item in expr %} или {% for item, index in expr %}.

    Итерируемое выражение хранится в condition.
    """
    block_type: str = "for"
    variable: str = "item"
    index_alias: Optional[str] = None
    iterable_text: str = ""

    @property
    def iterable(self) -> Optional[Node]:
        return self.condition

    def get_type(self) -> NodeType:
        return NodeType.FOR

    def label(self) -> str:
        target = self.variable if not self.index_alias else f"{self.variable}, {self.index_alias}"
        return f"For({target} in {self.iterable_text})"


@dataclass(frozen=True)
class WhileNode(BlockNode):
    block_type: str = "while"

    def get_type(self) -> NodeType:
        return NodeType.WHILE


@dataclass(frozen=True)
class IncludeNode(Node):
    """{% include "name" %} - вставка предкомпилированного шаблона."""
    path: Node
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.INCLUDE

    def children(self) -> List[Node]:
        return [self.path]


@dataclass(frozen=True)
class BlockDefNode(Node):
    """{% block name %} ... {% endblock %} - переопределяемая секция."""
    name: str
    body: List[Node] = field(default_factory=list)
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.BLOCK_DEF

    def children(self) -> List[Node]:
        return list(self.body)

    def label(self) -> str:
        return f"BlockDef({self.name})"


@dataclass(frozen=True)
class ExtendsNode(Node):
    """
    {% extends "parent" %} и следующие за ним переопределения блоков.
    """
    parent: Node
    blocks: Dict[str, BlockDefNode] = field(default_factory=dict)
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.EXTENDS

    def children(self) -> List[Node]:
        return [self.parent, *self.blocks.values()]


@dataclass(frozen=True)
class TemplateNode(Node):
    """
    Корень AST.

    Помимо дочерних узлов собирает имена переменных, функций и блоков,
    встреченных при разборе.
    """
    children_nodes: List[Node] = field(default_factory=list)
    variables: List[str] = field(default_factory=list)
    functions: List[str] = field(default_factory=list)
    blocks: List[str] = field(default_factory=list)
    span: Optional[Span] = field(default=None, compare=False, repr=False)

    def get_type(self) -> NodeType:
        return NodeType.TEMPLATE

    def children(self) -> List[Node]:
        return list(self.children_nodes)

    def label(self) -> str:
        return f"Template({len(self.children_nodes)} nodes)"


__all__ = [
    "NodeType",
    "Node",
    "LiteralNode",
    "IdentifierNode",
    "PropertyAccessNode",
    "ArrayAccessNode",
    "ExpressionNode",
    "FunctionCallNode",
    "FilterNode",
    "TextNode",
    "VariableNode",
    "CommentNode",
    "BlockNode",
    "ElseIfClause",
    "IfNode",
    "ForNode",
    "WhileNode",
    "IncludeNode",
    "BlockDefNode",
    "ExtendsNode",
    "TemplateNode",
]
