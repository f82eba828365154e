"""
Тесты командной строки: main(argv) с перехватом stdout/stderr.
"""

import json

from tplc.cli import main


class TestRender:

    def test_render_with_vars(self, write, capsys):
        path = write("hello.tpl", "Hello {{ name }}, you have {{ n + 1 }} items")

        code = main(["render", str(path), "--var", "name=World", "--var", "n=2"])

        assert code == 0
        assert capsys.readouterr().out == "Hello World, you have 3 items"

    def test_render_with_context_file(self, write, capsys):
        template = write("list.tpl", "{% for u in users %}{{ u.name }};{% endfor %}")
        context = write("ctx.yaml", "users:\n  - name: Ann\n  - name: Bob\n")

        code = main(["render", str(template), "--context", str(context)])

        assert code == 0
        assert capsys.readouterr().out == "Ann;Bob;"

    def test_no_escape(self, write, capsys):
        path = write("raw.tpl", "{{ html }}")

        main(["render", str(path), "--var", "html=<b>"])
        assert capsys.readouterr().out == "&lt;b&gt;"

        main(["render", str(path), "--var", "html=<b>", "--no-escape"])
        assert capsys.readouterr().out == "<b>"

    def test_config_file(self, write, capsys):
        path = write("raw.tpl", "{{ html }}")
        config = write("tplc.yaml", "engine:\n  auto_escape: false\n")

        main(["render", str(path), "--var", "html=<i>", "--config", str(config)])
        assert capsys.readouterr().out == "<i>"

    def test_render_error(self, write, capsys):
        path = write("bad.tpl", "{{ x | nope }}")

        code = main(["render", str(path)])

        assert code == 2
        assert "Unknown filter: nope" in capsys.readouterr().err

    def test_missing_template(self, tmp_path, capsys):
        code = main(["render", str(tmp_path / "absent.tpl")])

        assert code == 2
        assert "Template file not found" in capsys.readouterr().err

    def test_bad_var(self, write, capsys):
        path = write("t.tpl", "x")
        assert main(["render", str(path), "--var", "novalue"]) == 2
        assert "KEY=VALUE" in capsys.readouterr().err

    def test_strict_flag(self, write, capsys):
        path = write("open.tpl", "{% if a %}x")

        assert main(["render", str(path), "--strict"]) == 2
        assert "Template syntax error" in capsys.readouterr().err


class TestInspection:

    def test_analyze_valid(self, write, capsys):
        path = write("ok.tpl", "{{ user.name }}")

        code = main(["analyze", str(path)])
        data = json.loads(capsys.readouterr().out)

        assert code == 0
        assert data["valid"] is True
        assert data["variables"] == ["user"]
        assert data["template_name"] == str(path)

    def test_analyze_invalid(self, write, capsys):
        path = write("bad.tpl", "{% if a %}")

        code = main(["analyze", str(path)])
        data = json.loads(capsys.readouterr().out)

        assert code == 1
        assert data["diagnostics"][0]["kind"] == "unmatched_block_start"

    def test_tokens(self, write, capsys):
        path = write("t.tpl", "a{{ b }}")

        assert main(["tokens", str(path)]) == 0
        kinds = [t["kind"] for t in json.loads(capsys.readouterr().out)]
        assert kinds == ["TEXT", "VARIABLE", "EOF"]

    def test_export_tree(self, write, capsys):
        path = write("t.tpl", "{{ b }}")

        assert main(["export", str(path), "--format", "tree"]) == 0
        assert capsys.readouterr().out.splitlines() == [
            "Template(1 nodes)",
            "  Variable(b)",
            "    Identifier(b)",
        ]
