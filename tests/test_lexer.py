"""
Тесты для лексического анализатора шаблонов.

Проверяет корректную токенизацию всех элементов шаблонов:
- обычный текст и режим сохранения пробелов
- интерполяции {{ ... }} с фильтрами
- блочные теги {% ... %} и комментарии {# ... #}
- подтокены выражений и их позиции
"""

import pytest

from tplc.diagnostics import DiagnosticKind
from tplc.lexer import TemplateLexer, statistics, tokenize_template, tokens_by_kind, unescape
from tplc.tokens import TokenKind


def kinds(tokens):
    return [t.kind for t in tokens]


class TestTemplateLexer:
    """Тесты для базовой функциональности лексера."""

    def setup_method(self):
        self.lexer = TemplateLexer()

    def test_empty_template(self):
        """Пустой шаблон должен возвращать только EOF токен."""
        tokens = self.lexer.tokenize("")

        assert kinds(tokens) == [TokenKind.EOF]
        assert tokens[0].span.start == 0
        assert (tokens[0].line, tokens[0].column) == (1, 1)

    def test_plain_text(self):
        tokens = self.lexer.tokenize("Hello, world!")

        assert kinds(tokens) == [TokenKind.TEXT, TokenKind.EOF]
        assert tokens[0].text == "Hello, world!"

    def test_text_and_variable(self):
        tokens = self.lexer.tokenize("Hi {{ name }}!")

        assert kinds(tokens) == [TokenKind.TEXT, TokenKind.VARIABLE, TokenKind.TEXT, TokenKind.EOF]
        variable = tokens[1]
        assert variable.text == "name"
        assert variable.metadata["raw"] == "{{ name }}"
        assert kinds(variable.metadata["expression"]) == [TokenKind.IDENTIFIER]

    def test_tokens_cover_input(self):
        """Токены покрывают вход без перекрытий и пропусков."""
        text = "a {{ x | upper }} b {% if y %}c{% endif %}{# z #}\nd"
        tokens = self.lexer.tokenize(text)

        position = 0
        for token in tokens[:-1]:
            assert token.span.start == position
            position = token.span.end
        assert position == len(text)
        assert tokens[-1].kind == TokenKind.EOF

    def test_line_and_column(self):
        tokens = self.lexer.tokenize("ab\n{{ x }}")

        variable = tokens[1]
        assert (variable.line, variable.column) == (2, 1)
        identifier = variable.metadata["expression"][0]
        assert identifier.span.start == 6
        assert (identifier.line, identifier.column) == (2, 4)

    def test_block_tokens(self):
        tokens = self.lexer.tokenize("{% if a > 1 %}yes{% endif %}")

        assert kinds(tokens) == [TokenKind.BLOCK_START, TokenKind.TEXT, TokenKind.BLOCK_END, TokenKind.EOF]
        start, end = tokens[0], tokens[2]
        assert start.text == "if"
        assert start.metadata["condition"] == "a > 1"
        assert [t.text for t in start.metadata["condition_tokens"]] == ["a", ">", "1"]
        assert end.text == "endif"
        assert end.metadata["closes"] == "if"

    def test_for_loop_metadata(self):
        token = self.lexer.tokenize("{% for item, i in items %}{% endfor %}")[0]

        assert token.metadata["target"] == "item, i"
        assert token.metadata["iterable"] == "items"
        condition_tokens = token.metadata["condition_tokens"]
        assert [t.text for t in condition_tokens] == ["items"]
        assert condition_tokens[0].span.start == len("{% for item, i in ")

    def test_malformed_for_has_no_target(self):
        token = self.lexer.tokenize("{% for item %}{% endfor %}")[0]

        assert token.metadata["target"] is None
        assert token.metadata["condition_tokens"] == []

    def test_comment(self):
        tokens = self.lexer.tokenize("{# hidden {{ x }} #}")

        assert kinds(tokens) == [TokenKind.COMMENT, TokenKind.EOF]
        assert tokens[0].metadata["content"] == "hidden {{ x }}"

    def test_unknown_tag_is_text(self):
        tokens = self.lexer.tokenize("{% foo %}")
        assert kinds(tokens) == [TokenKind.TEXT, TokenKind.EOF]
        assert tokens[0].text == "{% foo %}"

    def test_preserve_whitespace(self):
        lexer = TemplateLexer(preserve_whitespace=True)
        tokens = lexer.tokenize("a b\nc")

        assert kinds(tokens) == [
            TokenKind.TEXT,
            TokenKind.WHITESPACE,
            TokenKind.TEXT,
            TokenKind.NEWLINE,
            TokenKind.TEXT,
            TokenKind.EOF,
        ]
        assert "".join(t.text for t in tokens) == "a b\nc"


class TestExpressionTokens:
    """Подтокены выражений внутри интерполяций."""

    def setup_method(self):
        self.lexer = TemplateLexer()

    def expression(self, text):
        return self.lexer.tokenize(text)[0].metadata["expression"]

    def test_literals(self):
        tokens = self.expression("{{ 'it\\'s' }}")
        assert tokens[0].kind == TokenKind.LITERAL
        assert tokens[0].metadata == {"value": "it's", "type": "string"}

        number = self.expression("{{ 3.14 }}")[0]
        assert number.metadata == {"value": 3.14, "type": "number"}

        boolean = self.expression("{{ true }}")[0]
        assert boolean.metadata == {"value": True, "type": "boolean"}

        null = self.expression("{{ null }}")[0]
        assert null.metadata == {"value": None, "type": "null"}

    def test_negative_number_folding(self):
        tokens = self.expression("{{ -5 }}")
        assert len(tokens) == 1
        assert tokens[0].metadata["value"] == -5

        tokens = self.expression("{{ 3 - -2 }}")
        assert [t.text for t in tokens] == ["3", "-", "-2"]

    def test_binary_minus_is_not_folded(self):
        tokens = self.expression("{{ 10 - 3 }}")
        assert [t.kind for t in tokens] == [TokenKind.LITERAL, TokenKind.OPERATOR, TokenKind.LITERAL]

    def test_filters(self):
        tokens = self.expression('{{ name | truncate:5:"~" | upper }}')

        filters = tokens_by_kind(tokens, TokenKind.FILTER)
        assert [f.metadata["name"] for f in filters] == ["truncate", "upper"]
        args = filters[0].metadata["args"]
        assert [a[0].metadata["value"] for a in args] == [5, "~"]

    def test_function_call(self):
        token = self.expression("{{ range(1, n) }}")[0]

        assert token.kind == TokenKind.FUNCTION
        assert token.metadata["name"] == "range"
        assert [[t.text for t in arg] for arg in token.metadata["args"]] == [["1"], ["n"]]

    def test_property_and_array_access(self):
        token = self.expression("{{ users[i].name }}")[0]

        assert token.kind == TokenKind.PROPERTY_ACCESS
        assert token.metadata["base"] == "users"
        (kind0, index_tokens), (kind1, name) = token.metadata["segments"]
        assert kind0 == "index" and [t.text for t in index_tokens] == ["i"]
        assert (kind1, name) == ("property", "name")

        array = self.expression("{{ items[0] }}")[0]
        assert array.kind == TokenKind.ARRAY_ACCESS

    def test_unexpected_character(self):
        self.lexer.tokenize("{{ a @ b }}")

        assert [d.kind for d in self.lexer.diagnostics] == [DiagnosticKind.UNEXPECTED_CHARACTER]
        assert self.lexer.diagnostics[0].position == 5

    def test_tokenize_with_diagnostics(self):
        result = self.lexer.tokenize_with_diagnostics("{{ a # b }}")
        assert result.tokens[-1].kind == TokenKind.EOF
        assert len(result.diagnostics) == 1


class TestHelpers:

    def test_statistics(self):
        stats = statistics(tokenize_template("a{{ b }}c"))
        assert stats == {"total": 4, "by_kind": {"TEXT": 2, "VARIABLE": 1, "EOF": 1}}

    @pytest.mark.parametrize("raw, expected", [
        ("plain", "plain"),
        ("a\\nb", "a\nb"),
        ("\\\"q\\\"", '"q"'),
        ("back\\\\slash", "back\\slash"),
    ])
    def test_unescape(self, raw, expected):
        assert unescape(raw) == expected

    def test_token_to_dict_is_plain(self):
        token = tokenize_template("{{ x | upper }}")[0]
        data = token.to_dict()

        assert data["kind"] == "VARIABLE"
        assert data["span"] == {"start": 0, "end": 15, "line": 1, "column": 1}
        assert data["metadata"]["expression"][0]["kind"] == "IDENTIFIER"
