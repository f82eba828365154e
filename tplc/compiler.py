"""
Компилятор AST в план замыканий.

Дерево обходится один раз при компиляции: каждый узел превращается в
замыкание, которое при рендере только вычисляет динамические части.
Скомпилированный шаблон не хранит изменяемого состояния, всё состояние
рендера живёт в ScopeManager, переданном при вызове.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, cast

from .config import EngineOptions
from .diagnostics import Diagnostic
from .errors import EvaluationError, TemplateError, TemplateNotFound
from .nodes import (
    ArrayAccessNode,
    BlockDefNode,
    BlockNode,
    CommentNode,
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
from .operators import UNDEFINED, SafeString, evaluate_binary, to_text, truthy
from .scope import ScopeManager
from .tokens import Span

logger = logging.getLogger(__name__)


@dataclass
class RenderState:
    """Состояние одного вызова рендера."""
    scope: ScopeManager
    options: EngineOptions
    template_name: Optional[str] = None
    block_overrides: Dict[str, "Renderer"] = field(default_factory=dict)
    resolver: Optional[Callable[[str], "CompiledTemplate"]] = None
    depth: int = 0


Renderer = Callable[[RenderState, List[str]], None]
Evaluator = Callable[[RenderState], Any]


@dataclass
class CompiledTemplate:
    """
    Результат компиляции: исходный текст и процедура рендера.

    Вызов template(context, scope) рендерит шаблон. Без scope создаётся
    свежий ScopeManager с реестрами движка.
    """
    source: str
    procedure: Renderer
    options: EngineOptions
    name: Optional[str] = None
    compiled_at: datetime = field(default_factory=datetime.now)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    scope_factory: Callable[[], ScopeManager] = ScopeManager
    resolver: Optional[Callable[[str], "CompiledTemplate"]] = None

    def __call__(self, context: Optional[Dict[str, Any]] = None, scope: Optional[ScopeManager] = None) -> str:
        scope = scope if scope is not None else self.scope_factory()
        state = RenderState(scope=scope, options=self.options, template_name=self.name, resolver=self.resolver)
        out: List[str] = []
        with scope.frame(dict(context or {})):
            try:
                self.procedure(state, out)
            except TemplateError as e:
                raise e.add_context(template_name=self.name)
        return "".join(out)

    def render(self, context: Optional[Dict[str, Any]] = None, scope: Optional[ScopeManager] = None) -> str:
        return self(context, scope)

    def render_into(self, state: RenderState, out: List[str], overrides: Optional[Dict[str, Renderer]] = None) -> None:
        """Рендер внутри другого шаблона (include/extends) в его области видимости."""
        if state.depth + 1 > state.options.max_depth:
            raise EvaluationError(f"Maximum include depth {state.options.max_depth} exceeded")
        nested = RenderState(
            scope=state.scope,
            options=state.options,
            template_name=self.name,
            block_overrides=dict(overrides or {}),
            resolver=state.resolver,
            depth=state.depth + 1,
        )
        self.procedure(nested, out)


class TemplateCompiler:
    """
    Компилятор AST в замыкания.

    Диспетчеризация по NodeType; неизвестный тип узла - ошибка
    программирования (ValueError) на этапе компиляции.
    """

    def __init__(self, options: Optional[EngineOptions] = None):
        self.options = options or EngineOptions()

    def compile(
        self,
        ast: TemplateNode,
        *,
        source: str = "",
        name: Optional[str] = None,
        diagnostics: Optional[List[Diagnostic]] = None,
        scope_factory: Callable[[], ScopeManager] = ScopeManager,
        resolver: Optional[Callable[[str], CompiledTemplate]] = None,
    ) -> CompiledTemplate:
        procedure = self._compile_nodes(ast.children())
        logger.debug(f"Compiled template {name or '<anonymous>'} ({len(ast.children())} top-level nodes)")
        return CompiledTemplate(
            source=source,
            procedure=procedure,
            options=self.options,
            name=name,
            diagnostics=list(diagnostics or []),
            scope_factory=scope_factory,
            resolver=resolver,
        )

    # ---------- узлы шаблона ----------

    def _compile_nodes(self, nodes: List[Node]) -> Renderer:
        renderers = [self._compile_node(node) for node in nodes]

        def render(state: RenderState, out: List[str]) -> None:
            for renderer in renderers:
                renderer(state, out)

        return render

    def _compile_node(self, node: Node) -> Renderer:
        node_type = node.get_type()

        if node_type == NodeType.TEXT:
            return self._compile_text(cast(TextNode, node))
        elif node_type == NodeType.COMMENT:
            return _render_nothing
        elif node_type == NodeType.VARIABLE:
            node = cast(VariableNode, node)
            return _annotated(self._compile_variable(node), f"{{{{ {node.name} }}}}", node.span)
        elif node_type == NodeType.IF:
            return _annotated(self._compile_if(cast(IfNode, node)), "{% if %}", node.span)
        elif node_type == NodeType.FOR:
            node = cast(ForNode, node)
            return _annotated(self._compile_for(node), f"{{% {node.block_type} %}}", node.span)
        elif node_type == NodeType.WHILE:
            return _annotated(self._compile_while(cast(WhileNode, node)), "{% while %}", node.span)
        elif node_type == NodeType.BLOCK:
            node = cast(BlockNode, node)
            return _annotated(self._compile_block(node), f"{{% {node.block_type} %}}", node.span)
        elif node_type == NodeType.INCLUDE:
            return _annotated(self._compile_include(cast(IncludeNode, node)), "{% include %}", node.span)
        elif node_type == NodeType.EXTENDS:
            return _annotated(self._compile_extends(cast(ExtendsNode, node)), "{% extends %}", node.span)
        elif node_type == NodeType.BLOCK_DEF:
            node = cast(BlockDefNode, node)
            return _annotated(self._compile_block_def(node), f"{{% block {node.name} %}}", node.span)
        else:
            raise ValueError(f"Unknown node type: {node_type}")

    def _compile_text(self, node: TextNode) -> Renderer:
        text = node.text

        def render(state: RenderState, out: List[str]) -> None:
            out.append(text)

        return render

    def _compile_variable(self, node: VariableNode) -> Renderer:
        """
        Значение выражения, цепочка фильтров слева направо, затем
        автоэкранирование (кроме SafeString).
        """
        expression = self._compile_expression(node.expression) if node.expression is not None else None
        filters = [self._compile_filter(f) for f in node.filters]

        def render(state: RenderState, out: List[str]) -> None:
            value = expression(state) if expression is not None else UNDEFINED
            for name, args in filters:
                value = state.scope.apply_filter(value, name, [arg(state) for arg in args])
            if state.options.auto_escape and not isinstance(value, SafeString):
                out.append(_escape(state, value))
            else:
                out.append(to_text(value))

        return render

    def _compile_filter(self, node: FilterNode) -> Tuple[str, List[Evaluator]]:
        return node.name, [self._compile_expression(arg) for arg in node.args]

    def _compile_if(self, node: IfNode) -> Renderer:
        arms: List[Tuple[Evaluator, Renderer]] = [
            (self._compile_expression(node.condition), self._compile_nodes(node.body))
        ]
        for clause in node.elseif_blocks:
            arms.append((self._compile_expression(clause.condition), self._compile_nodes(clause.body)))
        otherwise = self._compile_nodes(node.else_body) if node.else_body else None

        def render(state: RenderState, out: List[str]) -> None:
            for condition, body in arms:
                if truthy(condition(state)):
                    body(state, out)
                    return
            if otherwise is not None:
                otherwise(state, out)

        return render

    def _compile_for(self, node: ForNode) -> Renderer:
        """
        Итерация только по последовательностям (list, tuple, range);
        всё остальное не даёт вывода. Каждая итерация - отдельный фрейм.
        """
        iterable = self._compile_expression(node.iterable)
        body = self._compile_nodes(node.body)
        variable = node.variable
        index_alias = node.index_alias

        def render(state: RenderState, out: List[str]) -> None:
            sequence = iterable(state)
            if not isinstance(sequence, (list, tuple, range)):
                return
            items = list(sequence)
            length = len(items)
            for index, item in enumerate(items):
                bindings: Dict[str, Any] = {
                    variable: item,
                    "loop": {
                        "index": index,
                        "length": length,
                        "first": index == 0,
                        "last": index == length - 1,
                    },
                }
                if index_alias:
                    bindings[index_alias] = index
                with state.scope.frame(bindings):
                    body(state, out)

        return render

    def _compile_while(self, node: WhileNode) -> Renderer:
        condition = self._compile_expression(node.condition)
        body = self._compile_nodes(node.body)

        def render(state: RenderState, out: List[str]) -> None:
            limit = state.options.max_loop_iterations
            iterations = 0
            while truthy(condition(state)):
                iterations += 1
                if iterations > limit:
                    raise EvaluationError(f"While loop exceeded {limit} iterations")
                body(state, out)

        return render

    def _compile_block(self, node: BlockNode) -> Renderer:
        """Обобщённый блок: unless рендерит тело при ложном условии."""
        condition = self._compile_expression(node.condition) if node.condition is not None else None
        body = self._compile_nodes(node.body)
        otherwise = self._compile_nodes(node.else_body)
        negate = node.block_type == "unless"

        def render(state: RenderState, out: List[str]) -> None:
            if condition is None:
                body(state, out)
                return
            if truthy(condition(state)) != negate:
                body(state, out)
            else:
                otherwise(state, out)

        return render

    def _compile_include(self, node: IncludeNode) -> Renderer:
        path = self._compile_expression(node.path)

        def render(state: RenderState, out: List[str]) -> None:
            template = _resolve(state, to_text(path(state)))
            template.render_into(state, out)

        return render

    def _compile_extends(self, node: ExtendsNode) -> Renderer:
        """
        Рендер родительского шаблона с переопределёнными блоками.
        Переопределения потомков нижнего уровня имеют приоритет.
        """
        parent = self._compile_expression(node.parent)
        own = {name: self._compile_nodes(block.body) for name, block in node.blocks.items()}

        def render(state: RenderState, out: List[str]) -> None:
            template = _resolve(state, to_text(parent(state)))
            template.render_into(state, out, {**own, **state.block_overrides})

        return render

    def _compile_block_def(self, node: BlockDefNode) -> Renderer:
        name = node.name
        body = self._compile_nodes(node.body)

        def render(state: RenderState, out: List[str]) -> None:
            override = state.block_overrides.get(name)
            (override or body)(state, out)

        return render

    # ---------- выражения ----------

    def _compile_expression(self, node: Node) -> Evaluator:
        node_type = node.get_type()

        if node_type == NodeType.LITERAL:
            value = cast(LiteralNode, node).value
            return lambda state: value
        elif node_type == NodeType.IDENTIFIER:
            name = cast(IdentifierNode, node).name
            return lambda state: state.scope.get_variable(name)
        elif node_type == NodeType.PROPERTY_ACCESS:
            return self._compile_property_access(cast(PropertyAccessNode, node))
        elif node_type == NodeType.ARRAY_ACCESS:
            return self._compile_array_access(cast(ArrayAccessNode, node))
        elif node_type == NodeType.EXPRESSION:
            return self._compile_binary(cast(ExpressionNode, node))
        elif node_type == NodeType.FUNCTION_CALL:
            return self._compile_call(cast(FunctionCallNode, node))
        else:
            raise ValueError(f"Node type {node_type} is not an expression")

    def _compile_property_access(self, node: PropertyAccessNode) -> Evaluator:
        obj = self._compile_expression(node.object)
        name = node.property
        return lambda state: state.scope.resolve_property(obj(state), name)

    def _compile_array_access(self, node: ArrayAccessNode) -> Evaluator:
        array = self._compile_expression(node.array)
        index = self._compile_expression(node.index)
        return lambda state: state.scope.resolve_array_access(array(state), index(state))

    def _compile_binary(self, node: ExpressionNode) -> Evaluator:
        operator = node.operator
        left = self._compile_expression(node.left)
        right = self._compile_expression(node.right)

        def evaluate(state: RenderState) -> Any:
            return evaluate_binary(
                operator,
                left(state),
                lambda: right(state),
                strict_arithmetic=state.options.strict_arithmetic,
            )

        return evaluate

    def _compile_call(self, node: FunctionCallNode) -> Evaluator:
        name = node.name
        args = [self._compile_expression(arg) for arg in node.args]
        return lambda state: state.scope.call_function(name, [arg(state) for arg in args])


# ---------- вспомогательные функции ----------

def _render_nothing(state: RenderState, out: List[str]) -> None:
    return None


def _escape(state: RenderState, value: Any) -> str:
    if state.scope.has_filter("escape"):
        return to_text(state.scope.apply_filter(value, "escape"))
    return html.escape(to_text(value), quote=True)


def _resolve(state: RenderState, name: str) -> CompiledTemplate:
    if state.resolver is None:
        raise TemplateNotFound(name)
    return state.resolver(name)


def _annotated(renderer: Renderer, construct: str, span: Optional[Span]) -> Renderer:
    """
    Дописывает в ошибку рендера самую внутреннюю конструкцию и имя шаблона.
    """
    line = span.line if span is not None else None
    column = span.column if span is not None else None

    def render(state: RenderState, out: List[str]) -> None:
        try:
            renderer(state, out)
        except TemplateError as e:
            raise e.add_context(
                template_name=state.template_name,
                construct=construct,
                line=line,
                column=column,
            )

    return render


__all__ = ["TemplateCompiler", "CompiledTemplate", "RenderState"]
