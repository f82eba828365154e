"""
Тесты фасада движка: компиляция, кэш, анализ и экспорт.
"""

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from tplc import Engine, EngineOptions
from tplc.diagnostics import DiagnosticKind
from tplc.errors import ParseError, TemplateNotFound, TemplateSyntaxError

BALANCED = [
    "plain text",
    "Hello {{ name | upper }}!",
    "{% if a %}x{% elseif b %}y{% else %}z{% endif %}",
    "{% for u in users %}{{ u.name }}{% if u.admin && u.active %}*{% endif %}{% endfor %}",
    "{% each x, i in range(3) %}{{ i }}{% endeach %}",
    "{% while false %}never{% endwhile %}{% unless a %}b{% endunless %}",
    '{{ price | currency:"$" }} {{ items[0] }} {{ len(items) > 1 }}',
    "{# {% if %} inside a comment #}done",
]


class TestProperties:
    """Общие свойства конвейера."""

    @pytest.mark.parametrize("template", BALANCED)
    def test_balanced_templates_have_no_diagnostics(self, engine, template):
        analysis = engine.analyze(template)
        assert analysis.diagnostics == []
        assert analysis.valid

    @pytest.mark.parametrize("template", BALANCED)
    def test_render_is_idempotent(self, engine, template):
        context = {"name": "n", "users": [{"name": "a", "admin": True, "active": True}], "items": [1, 2], "price": 2}
        assert engine.render(template, context) == engine.render(template, context)

    @pytest.mark.parametrize("template", BALANCED)
    def test_compile_then_invoke_equals_render(self, engine, template):
        context = {"name": "n", "items": [3], "price": 1, "a": True, "b": False}
        compiled = engine.compile(template)
        assert compiled(context, engine.create_scope()) == engine.render(template, context)

    def test_compiled_template_is_reusable(self, engine):
        compiled = engine.compile("{{ x }}")
        assert [compiled({"x": i}) for i in range(3)] == ["0", "1", "2"]

    def test_concurrent_renders_of_one_template(self, engine):
        """Каждый вызов получает свой ScopeManager; контексты не смешиваются."""
        compiled = engine.compile(
            "{% for x in xs %}{{ who }}:{{ x }};{% endfor %}", name="shared"
        )

        def job(n):
            return compiled({"who": f"t{n}", "xs": list(range(n % 5))})

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(job, range(40)))

        for n, output in enumerate(results):
            assert output == "".join(f"t{n}:{x};" for x in range(n % 5))

    def test_registries_are_per_engine(self):
        first, second = Engine(), Engine()
        first.register_filter("shout", lambda v: f"{v}!")

        assert first.render("{{ 'a' | shout }}") == "a!"
        assert "shout" not in second.filters


class TestDiagnostics:

    def kinds(self, engine, template):
        return [d.kind for d in engine.analyze(template).diagnostics]

    def test_stages_are_deduplicated(self, engine):
        """Одна проблема, найденная распознавателем и парсером, сообщается один раз."""
        assert self.kinds(engine, "{% if a %}x") == [DiagnosticKind.UNMATCHED_BLOCK_START]
        assert self.kinds(engine, "a{% endfor %}b") == [DiagnosticKind.UNMATCHED_BLOCK_END]
        assert self.kinds(engine, "{% else %}") == [DiagnosticKind.MISPLACED_CLAUSE]
        assert self.kinds(engine, "{{ }}") == [DiagnosticKind.EMPTY_INTERPOLATION]

    def test_invalid_for(self, engine):
        assert self.kinds(engine, "{% for x %}y{% endfor %}") == [DiagnosticKind.INVALID_FOR]

    def test_best_effort_render(self, engine):
        """Нестрогий режим рендерит то, что удалось разобрать."""
        assert engine.render("Hello {{ name", {"name": "x"}) == "Hello {{ name"
        assert engine.render("{% if a %}yes", {"a": True}) == "yes"
        assert engine.render("{% foo %}") == "{% foo %}"

    def test_strict_mode(self):
        engine = Engine(strict_mode=True)

        with pytest.raises(TemplateSyntaxError) as exc:
            engine.compile("{% if a %}x", name="broken")

        error = exc.value
        assert [d.kind for d in error.diagnostics] == [DiagnosticKind.UNMATCHED_BLOCK_START]
        assert error.template_name == "broken"

    def test_max_depth(self):
        engine = Engine(max_depth=4)
        with pytest.raises(ParseError):
            engine.compile("{% if a %}" * 5 + "{% endif %}" * 5)

    def test_warnings(self, engine):
        analysis = engine.analyze("{% for x in xs %}{% endfor %}")
        assert analysis.valid
        assert [w.kind for w in analysis.warnings] == [DiagnosticKind.EMPTY_BLOCK]


class TestCache:

    def test_named_templates_are_cached(self, engine):
        first = engine.compile("{{ a }}", name="t")
        assert engine.compile("{{ a }}", name="t") is first

    def test_changed_source_recompiles(self, engine):
        first = engine.compile("{{ a }}", name="t")
        second = engine.compile("{{ b }}", name="t")

        assert second is not first
        assert engine.render_template("t", {"b": 2}) == "2"

    def test_anonymous_templates_are_not_cached(self, engine):
        engine.compile("{{ a }}")
        assert engine.cache_stats().size == 0

    def test_eviction(self):
        engine = Engine(max_cache_size=2)
        for name in ("a", "b", "c"):
            engine.compile(name, name=name)

        stats = engine.cache_stats()
        assert stats.size == 2
        assert stats.names == ["b", "c"]
        assert stats.evictions == 1

    def test_precompiled_survive_eviction(self):
        engine = Engine(max_cache_size=1)
        engine.precompile("keep", "kept")
        engine.compile("other", name="other")

        assert engine.render_template("keep") == "kept"
        assert engine.cache_stats().precompiled == ["keep"]

    def test_cache_disabled(self):
        engine = Engine(cache_templates=False)
        engine.compile("x", name="x")
        assert engine.cache_stats().size == 0
        assert engine.cache_stats().enabled is False

    def test_env_disables_cache(self, monkeypatch):
        monkeypatch.setenv("TPLC_CACHE", "0")
        assert Engine().options.cache_templates is False

    def test_clear_cache(self, engine):
        engine.precompile("p", "x")
        engine.clear_cache()

        with pytest.raises(TemplateNotFound):
            engine.render_template("p")
        assert engine.cache_stats().size == 0


class TestIntrospection:

    def test_analysis_report(self, engine):
        report = engine.analyze("{% for x in xs %}{{ len(x) }}{% endfor %}").report("list")
        data = report.model_dump(mode="json")

        assert data["template_name"] == "list"
        assert data["valid"] is True
        assert data["variables"] == ["xs", "x"]
        assert data["functions"] == ["len"]
        assert data["tokens_by_kind"] == {"BLOCK_START": 1, "VARIABLE": 1, "BLOCK_END": 1, "EOF": 1}
        assert data["nodes_by_type"]["For"] == 1

    def test_report_serializes_diagnostics(self, engine):
        data = engine.analyze("{% endif %}").report().model_dump(mode="json")

        assert data["valid"] is False
        assert data["diagnostics"][0]["kind"] == "unmatched_block_end"
        assert data["diagnostics"][0]["line"] == 1

    def test_debug_reports_render_error(self, engine):
        report = engine.debug("{{ x | nope }}", {"x": 1})

        assert report.output is None
        assert "Unknown filter: nope" in report.error
        assert report.tokens[-1]["kind"] == "EOF"
        assert report.ast["type"] == "Template"

    def test_debug_output(self, engine):
        report = engine.debug("{{ x }}", {"x": 1})
        assert report.output == "1"
        assert report.error is None

    def test_export_formats(self, engine):
        template = "{% if a %}{{ b }}{% endif %}"

        ast = json.loads(engine.export(template, "ast"))
        assert ast["type"] == "Template"
        assert ast["children_nodes"][0]["type"] == "If"

        tokens = json.loads(engine.export(template, "tokens"))
        assert [t["kind"] for t in tokens] == ["BLOCK_START", "VARIABLE", "BLOCK_END", "EOF"]

        analysis = json.loads(engine.export(template, "analysis"))
        assert analysis["valid"] is True

        assert engine.export(template, "tree").startswith("Template(1 nodes)")

    def test_export_unknown_format(self, engine):
        with pytest.raises(ValueError):
            engine.export("x", "yaml")

    def test_render_batch(self, engine):
        results = engine.render_batch([
            {"template": "{{ x }}", "context": {"x": 1}, "name": "ok"},
            {"template": "{{ x | nope }}"},
        ])

        assert results[0] == {"success": True, "output": "1", "name": "ok"}
        assert results[1]["success"] is False
        assert "Unknown filter" in results[1]["error"]

    def test_stats(self, engine):
        engine.render("{{ 1 }}")
        engine.render("{{ 2 }}", name="two")
        stats = engine.stats()

        assert stats.compilations == 2
        assert stats.renders == 2
        assert "upper" in stats.filters
        assert stats.cache.names == ["two"]
        assert stats.options["auto_escape"] is True

    def test_with_options(self, engine):
        engine.register_filter("shout", lambda v: f"{v}!")
        raw = engine.with_options(auto_escape=False)

        assert raw.options.auto_escape is False
        assert engine.options.auto_escape is True
        assert raw.render("{{ '<b>' | shout }}") == "<b>!"

    def test_engine_from_options_object(self):
        engine = Engine(EngineOptions(auto_escape=False), max_cache_size=5)

        assert engine.options.auto_escape is False
        assert engine.options.max_cache_size == 5
