"""
Тесты парсера шаблонов.

Проверяет построение AST, приоритеты операторов и восстановление
после структурных ошибок с накоплением диагностик.
"""

import pytest

from tplc.diagnostics import DiagnosticKind, Severity
from tplc.errors import ParseError
from tplc.lexer import tokenize_template
from tplc.nodes import (
    ArrayAccessNode,
    BlockDefNode,
    BlockNode,
    ExpressionNode,
    ExtendsNode,
    ForNode,
    FunctionCallNode,
    IdentifierNode,
    IfNode,
    IncludeNode,
    LiteralNode,
    NodeType,
    PropertyAccessNode,
    TextNode,
    VariableNode,
    WhileNode,
)
from tplc.parser import TemplateParser, build_ast, dump, statistics, validate


def parse(text, **kwargs):
    parser = TemplateParser(tokenize_template(text), **kwargs)
    ast = parser.parse()
    return ast, parser.diagnostics


def expr(text):
    """Дерево выражения внутри {{ }}."""
    ast, diagnostics = parse("{{ " + text + " }}")
    assert diagnostics == []
    return ast.children()[0].expression


class TestStructure:

    def test_text_only(self):
        ast, diagnostics = parse("hello")
        assert ast.children() == [TextNode("hello")]
        assert diagnostics == []

    def test_variable_with_filters(self):
        ast, _ = parse('{{ name | truncate:3:"." | upper }}')
        node = ast.children()[0]

        assert isinstance(node, VariableNode)
        assert node.name == "name"
        assert node.expression == IdentifierNode("name")
        assert [f.name for f in node.filters] == ["truncate", "upper"]
        assert node.filters[0].args == [LiteralNode(3, "number"), LiteralNode(".", "string")]

    def test_if_elseif_else(self):
        ast, diagnostics = parse("{% if a %}A{% elseif b %}B{% elseif c %}C{% else %}D{% endif %}")
        node = ast.children()[0]

        assert diagnostics == []
        assert isinstance(node, IfNode)
        assert node.condition == IdentifierNode("a")
        assert node.body == [TextNode("A")]
        assert [c.condition for c in node.elseif_blocks] == [IdentifierNode("b"), IdentifierNode("c")]
        assert node.else_body == [TextNode("D")]

    def test_for_loop(self):
        ast, diagnostics = parse("{% for item, i in list %}{{ item }}{% endfor %}")
        node = ast.children()[0]

        assert diagnostics == []
        assert isinstance(node, ForNode)
        assert node.variable == "item"
        assert node.index_alias == "i"
        assert node.iterable == IdentifierNode("list")
        assert node.iterable_text == "list"

    def test_each_is_a_loop(self):
        ast, _ = parse("{% each x in xs %}{% endeach %}")
        node = ast.children()[0]
        assert node.get_type() == NodeType.FOR
        assert node.block_type == "each"

    def test_while_and_unless(self):
        ast, diagnostics = parse("{% while a %}w{% endwhile %}{% unless b %}u{% endunless %}")
        loop, unless = ast.children()

        assert diagnostics == []
        assert isinstance(loop, WhileNode)
        assert isinstance(unless, BlockNode) and unless.block_type == "unless"
        assert unless.get_type() == NodeType.BLOCK

    def test_include(self):
        ast, _ = parse('{% include "header" %}')
        assert ast.children() == [IncludeNode(LiteralNode("header", "string"))]

    def test_extends_collects_blocks(self):
        text = '{% extends "base" %}\n{# c #}\n{% block title %}T{% endblock %}\n{% block body %}B{% endblock %}'
        ast, diagnostics = parse(text)
        node = ast.children()[0]

        assert diagnostics == []
        assert isinstance(node, ExtendsNode)
        assert node.parent == LiteralNode("base", "string")
        assert list(node.blocks) == ["title", "body"]
        assert node.blocks["body"] == BlockDefNode("body", [TextNode("B")])
        assert ast.blocks == ["title", "body"]

    def test_collected_names(self):
        ast, _ = parse("{{ user.name }}{{ count }}{{ len(items) }}{{ count }}")

        assert ast.variables == ["user", "count", "items"]
        assert ast.functions == ["len"]


class TestExpressions:

    def test_precedence(self):
        """Умножение связывает сильнее сложения."""
        node = expr("2 + 3 * 4")
        assert node == ExpressionNode(
            "+",
            LiteralNode(2, "number"),
            ExpressionNode("*", LiteralNode(3, "number"), LiteralNode(4, "number")),
        )

    def test_lowest_precedence_is_root(self):
        node = expr("a || b && c == d")

        assert node.operator == "||"
        assert node.right.operator == "&&"
        assert node.right.right.operator == "=="

    def test_equal_precedence_is_right_associative(self):
        node = expr("a - b - c")

        assert node.operator == "-"
        assert node.left == IdentifierNode("a")
        assert node.right == ExpressionNode("-", IdentifierNode("b"), IdentifierNode("c"))

    def test_unary_minus(self):
        node = expr("-x")
        assert node == ExpressionNode("-", LiteralNode(0, "number"), IdentifierNode("x"))

    def test_unary_minus_after_operator(self):
        node = expr("a * -b")
        assert node == ExpressionNode(
            "*",
            IdentifierNode("a"),
            ExpressionNode("-", LiteralNode(0, "number"), IdentifierNode("b")),
        )

    def test_accessor_chain(self):
        node = expr("users[0].name")
        assert node == PropertyAccessNode(
            ArrayAccessNode(IdentifierNode("users"), LiteralNode(0, "number")),
            "name",
        )

    def test_function_args(self):
        node = expr("range(1, n + 1)")
        assert node == FunctionCallNode("range", [
            LiteralNode(1, "number"),
            ExpressionNode("+", IdentifierNode("n"), LiteralNode(1, "number")),
        ])

    def test_lowest_level_operator_is_right_associative(self):
        node = expr("a || b || c")

        assert node.left == IdentifierNode("a")
        assert node.right == ExpressionNode("||", IdentifierNode("b"), IdentifierNode("c"))

    def test_function_inside_index(self):
        """Внешний аксессор захватывает вызов внутри скобок."""
        node = expr("items[len(items) - 1]")
        assert node == ArrayAccessNode(
            IdentifierNode("items"),
            ExpressionNode(
                "-",
                FunctionCallNode("len", [IdentifierNode("items")]),
                LiteralNode(1, "number"),
            ),
        )

    def test_accessor_inside_function(self):
        node = expr("len(user.name)")
        assert node == FunctionCallNode("len", [PropertyAccessNode(IdentifierNode("user"), "name")])

    def test_string_inside_call_and_index(self):
        assert expr('upper("x")') == FunctionCallNode("upper", [LiteralNode("x", "string")])
        assert expr('d["key"]') == ArrayAccessNode(IdentifierNode("d"), LiteralNode("key", "string"))

    def test_missing_operand_is_reported(self):
        ast, diagnostics = parse("{{ a + }}")
        assert [d.kind for d in diagnostics] == [DiagnosticKind.UNEXPECTED_TOKEN]
        assert ast.children()[0].expression.right == LiteralNode(None, "null")


class TestRecovery:
    """Структурные ошибки дают диагностики, а не исключения."""

    def test_unclosed_block(self):
        ast, diagnostics = parse("{% if a %}text")

        assert [d.kind for d in diagnostics] == [DiagnosticKind.UNMATCHED_BLOCK_START]
        assert ast.children()[0].body == [TextNode("text")]

    def test_stray_end(self):
        ast, diagnostics = parse("a{% endfor %}b")

        assert [d.kind for d in diagnostics] == [DiagnosticKind.UNMATCHED_BLOCK_END]
        assert ast.children() == [TextNode("a"), TextNode("b")]

    def test_inner_block_closed_by_outer_end(self):
        ast, diagnostics = parse("{% for x in xs %}{% if a %}y{% endfor %}after")

        assert [d.kind for d in diagnostics] == [DiagnosticKind.UNMATCHED_BLOCK_START]
        loop = ast.children()[0]
        assert isinstance(loop, ForNode)
        assert isinstance(loop.body[0], IfNode)
        assert ast.children()[1] == TextNode("after")

    def test_misplaced_else(self):
        ast, diagnostics = parse("x{% else %}y")
        assert [d.kind for d in diagnostics] == [DiagnosticKind.MISPLACED_CLAUSE]
        assert ast.children() == [TextNode("x"), TextNode("y")]

    def test_invalid_for(self):
        ast, diagnostics = parse("{% for x %}y{% endfor %}")
        node = ast.children()[0]

        assert [d.kind for d in diagnostics] == [DiagnosticKind.INVALID_FOR]
        assert node.variable == "item"
        assert node.iterable == IdentifierNode("items")
        assert node.body == [TextNode("y")]

    def test_empty_interpolation(self):
        ast, diagnostics = parse("{{ }}")
        assert [d.kind for d in diagnostics] == [DiagnosticKind.EMPTY_INTERPOLATION]
        assert ast.children()[0].expression is None

    def test_max_depth(self):
        text = "{% if a %}" * 6 + "x" + "{% endif %}" * 6
        with pytest.raises(ParseError):
            parse(text, max_depth=5)

    def test_depth_within_limit(self):
        text = "{% if a %}" * 3 + "x" + "{% endif %}" * 3
        ast, diagnostics = parse(text, max_depth=5)
        assert diagnostics == []


class TestAnalysis:

    def test_statistics(self):
        ast, _ = parse("{% for x in xs %}{{ x }}{% endfor %}")
        stats = statistics(ast)

        assert stats["by_type"] == {"Template": 1, "For": 1, "Identifier": 2, "Variable": 1}
        assert stats["total_nodes"] == 5
        assert stats["max_depth"] == 4
        assert stats["variables"] == ["xs", "x"]

    def test_validate_empty_block(self):
        ast, _ = parse("{% if a %}{% endif %}")
        warnings = validate(ast)

        assert [w.kind for w in warnings] == [DiagnosticKind.EMPTY_BLOCK]
        assert warnings[0].severity == Severity.WARNING

    def test_dump(self):
        ast, _ = parse("{% if a %}x{% endif %}")
        assert dump(ast).splitlines() == [
            "Template(1 nodes)",
            "  If(elseif=0, else=False)",
            "    Identifier(a)",
            "    Text('x')",
        ]

    def test_build_ast(self):
        ast, diagnostics = build_ast(tokenize_template("{{ x }}"))
        assert ast.get_type() == NodeType.TEMPLATE
        assert diagnostics == []
