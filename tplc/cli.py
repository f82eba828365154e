from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import EngineOptions, load_context, load_options
from .engine import EXPORT_FORMATS, Engine
from .errors import TemplateError
from .version import tool_version


def _setup_logging() -> None:
    """Вывод логов пакета в stderr; уровень DEBUG при TPLC_DEBUG."""
    root = logging.getLogger("tplc")
    root.setLevel(logging.DEBUG if os.environ.get("TPLC_DEBUG") else logging.WARNING)
    if not root.handlers:
        h = logging.StreamHandler()
        h.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
        root.addHandler(h)


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="tplc",
        description="Template compiler: render, analyze and inspect templates",
        add_help=True,
    )
    p.add_argument("-v", "--version", action="version", version=f"%(prog)s {tool_version()}")
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("template", help="путь к файлу шаблона или - для чтения из stdin")
        sp.add_argument(
            "--config",
            metavar="FILE",
            help="YAML с опциями движка (секция engine или верхний уровень)",
        )
        sp.add_argument(
            "--strict",
            action="store_true",
            help="диагностики шаблона считаются ошибкой",
        )

    sp_render = sub.add_parser("render", help="Рендер шаблона в stdout")
    add_common(sp_render)
    sp_render.add_argument(
        "--context",
        metavar="FILE",
        help="контекст рендера: YAML или JSON файл",
    )
    sp_render.add_argument(
        "--var",
        action="append",
        metavar="KEY=VALUE",
        help="переменная контекста (можно указать несколько)",
    )
    sp_render.add_argument(
        "--no-escape",
        action="store_true",
        help="отключить HTML-экранирование интерполяций",
    )

    sp_analyze = sub.add_parser("analyze", help="JSON-отчёт: структура и диагностики")
    add_common(sp_analyze)

    sp_tokens = sub.add_parser("tokens", help="JSON-список токенов")
    add_common(sp_tokens)

    sp_export = sub.add_parser("export", help="Экспорт AST/токенов/анализа")
    add_common(sp_export)
    sp_export.add_argument("--format", choices=EXPORT_FORMATS, default="ast")

    return p


def _read_template(arg: str) -> str:
    if arg == "-":
        return sys.stdin.read()
    path = Path(arg)
    if not path.is_file():
        raise ValueError(f"Template file not found: {path}")
    return path.read_text(encoding="utf-8")


def _parse_vars(pairs: Optional[List[str]]) -> Dict[str, Any]:
    """
    KEY=VALUE -> словарь. Значение разбирается как JSON, если это возможно
    (числа, true/false, списки), иначе остаётся строкой.
    """
    result: Dict[str, Any] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"Invalid --var '{pair}'. Expected KEY=VALUE")
        key, raw = pair.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"Invalid --var '{pair}'. Empty key")
        try:
            result[key] = json.loads(raw)
        except json.JSONDecodeError:
            result[key] = raw
    return result


def _engine(ns: argparse.Namespace) -> Engine:
    options = load_options(Path(ns.config)) if ns.config else EngineOptions()
    changes: Dict[str, Any] = {}
    if ns.strict:
        changes["strict_mode"] = True
    if getattr(ns, "no_escape", False):
        changes["auto_escape"] = False
    if changes:
        options = options.replace(**changes)
    return Engine(options)


def _dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2, default=str) + "\n"


def main(argv: list[str] | None = None) -> int:
    ns = _build_parser().parse_args(argv)
    _setup_logging()

    try:
        engine = _engine(ns)
        template = _read_template(ns.template)
        name = None if ns.template == "-" else ns.template

        if ns.cmd == "render":
            context: Dict[str, Any] = load_context(Path(ns.context)) if ns.context else {}
            context.update(_parse_vars(ns.var))
            sys.stdout.write(engine.render(template, context, name))
            return 0

        if ns.cmd == "analyze":
            report = engine.analyze(template).report(name)
            sys.stdout.write(_dumps(report.model_dump(mode="json")))
            return 0 if report.valid else 1

        if ns.cmd == "tokens":
            tokens = engine.analyze(template).tokens
            sys.stdout.write(_dumps([t.to_dict() for t in tokens]))
            return 0

        if ns.cmd == "export":
            sys.stdout.write(engine.export(template, ns.format).rstrip("\n") + "\n")
            return 0

    except TemplateError as e:
        sys.stderr.write(str(e).rstrip() + "\n")
        return 2
    except ValueError as e:
        sys.stderr.write(str(e).rstrip() + "\n")
        return 2

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
