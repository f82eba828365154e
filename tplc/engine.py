"""
Engine facade of the template compiler.

Wires the pipeline stages together and owns everything that outlives a
single render: options, function and filter registries, the compiled
template cache and the registry of precompiled templates.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .builtins import default_filters, default_functions
from .cache import TemplateCache
from .compiler import CompiledTemplate, TemplateCompiler
from .config import EngineOptions
from .diagnostics import Diagnostic, merge_diagnostics
from .errors import TemplateError, TemplateNotFound, TemplateSyntaxError
from .lexer import TemplateLexer, statistics as token_statistics
from .nodes import TemplateNode
from .parser import TemplateParser, dump, statistics as ast_statistics, validate as validate_ast
from .recognizer import SyntaxRecognizer
from .report import AnalysisReport, CacheStats, DebugReport, DiagnosticModel, EngineStats
from .scope import ScopeManager
from .tokens import Token
from .version import tool_version

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("ast", "tokens", "analysis", "tree")


@dataclass
class Analysis:
    """Tokens, tree and diagnostics of one template."""
    source: str
    tokens: List[Token]
    ast: TemplateNode
    diagnostics: List[Diagnostic] = field(default_factory=list)
    warnings: List[Diagnostic] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.diagnostics

    def report(self, name: Optional[str] = None) -> AnalysisReport:
        token_stats = token_statistics(self.tokens)
        node_stats = ast_statistics(self.ast)
        return AnalysisReport(
            tool_version=tool_version(),
            template_name=name,
            valid=self.valid,
            token_count=len(self.tokens),
            tokens_by_kind=token_stats["by_kind"],
            nodes_by_type=node_stats["by_type"],
            max_depth=node_stats["max_depth"],
            variables=list(self.ast.variables),
            functions=list(self.ast.functions),
            blocks=list(self.ast.blocks),
            diagnostics=[DiagnosticModel.from_diagnostic(d) for d in self.diagnostics],
            warnings=[DiagnosticModel.from_diagnostic(d) for d in self.warnings],
        )


class Engine:
    """
    Template engine.

    Every engine has its own registries: functions and filters registered
    on one engine are invisible to another.
    """

    def __init__(self, options: Optional[EngineOptions] = None, **overrides: Any):
        """
        Initialize engine with specified options.

        Args:
            options: Engine options (defaults when omitted)
            **overrides: Individual option overrides
        """
        base = options or EngineOptions()
        if overrides:
            base = base.replace(**overrides)
        self.options = base.with_env_overrides()

        self.recognizer = SyntaxRecognizer()
        self.compiler = TemplateCompiler(self.options)
        self.functions: Dict[str, Callable[..., Any]] = default_functions()
        self.filters: Dict[str, Callable[..., Any]] = default_filters()
        self.cache: TemplateCache[CompiledTemplate] = TemplateCache(
            self.options.max_cache_size, enabled=self.options.cache_templates
        )
        self._precompiled: Dict[str, CompiledTemplate] = {}
        self._registry_lock = threading.Lock()
        self._counters = {"compilations": 0, "renders": 0}

    # ---------- pipeline ----------

    def _build(self, template: str) -> Tuple[List[Token], TemplateNode, List[Diagnostic]]:
        recognized = self.recognizer.validate(template)

        lexer = TemplateLexer(self.recognizer, preserve_whitespace=self.options.preserve_whitespace)
        tokens = lexer.tokenize(template)

        parser = TemplateParser(tokens, max_depth=self.options.max_depth)
        ast = parser.parse()

        diagnostics = merge_diagnostics(recognized, lexer.diagnostics, parser.diagnostics)
        return tokens, ast, diagnostics

    def compile(self, template: str, name: Optional[str] = None) -> CompiledTemplate:
        """
        Compile a template into a reusable render procedure.

        Named templates are cached; a cached entry is reused only while its
        source text is unchanged.

        Raises:
            TemplateSyntaxError: In strict mode when diagnostics were found
            ParseError: On unrecoverable parsing failure
        """
        if name is not None and self.options.cache_templates:
            cached = self.cache.get(name)
            if cached is not None and cached.source == template:
                logger.debug(f"Using cached template '{name}'")
                return cached

        tokens, ast, diagnostics = self._build(template)

        if diagnostics:
            if self.options.strict_mode:
                raise TemplateSyntaxError(diagnostics).add_context(template_name=name)
            for diag in diagnostics:
                logger.warning(f"{name or '<template>'}: {diag}")

        compiled = self.compiler.compile(
            ast,
            source=template,
            name=name,
            diagnostics=diagnostics,
            scope_factory=self.create_scope,
            resolver=self._resolve,
        )
        with self._registry_lock:
            self._counters["compilations"] += 1
        if name is not None:
            self.cache.put(name, compiled)
        return compiled

    def render(self, template: str, context: Optional[Dict[str, Any]] = None, name: Optional[str] = None) -> str:
        compiled = self.compile(template, name)
        output = compiled(context, self.create_scope())
        with self._registry_lock:
            self._counters["renders"] += 1
        return output

    def precompile(self, name: str, template: str) -> CompiledTemplate:
        """
        Compile and register a template under a name for render_template,
        include and extends. Registered templates are never evicted.
        """
        compiled = self.compile(template, name)
        with self._registry_lock:
            self._precompiled[name] = compiled
        return compiled

    def render_template(self, name: str, context: Optional[Dict[str, Any]] = None) -> str:
        compiled = self._resolve(name)
        output = compiled(context, self.create_scope())
        with self._registry_lock:
            self._counters["renders"] += 1
        return output

    def render_batch(self, items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Render several templates; a failing item does not stop the batch.

        Each item is a mapping with `template` and optional `context`, `name`.
        """
        results: List[Dict[str, Any]] = []
        for item in items:
            name = item.get("name")
            try:
                output = self.render(item["template"], item.get("context") or {}, name)
                results.append({"success": True, "output": output, "name": name})
            except TemplateError as e:
                logger.debug(f"Batch item {name or '<template>'} failed: {e}")
                results.append({"success": False, "error": str(e), "name": name})
        return results

    def _resolve(self, name: str) -> CompiledTemplate:
        with self._registry_lock:
            compiled = self._precompiled.get(name)
        if compiled is None:
            compiled = self.cache.get(name)
        if compiled is None:
            raise TemplateNotFound(name)
        return compiled

    # ---------- introspection ----------

    def analyze(self, template: str) -> Analysis:
        tokens, ast, diagnostics = self._build(template)
        return Analysis(
            source=template,
            tokens=tokens,
            ast=ast,
            diagnostics=diagnostics,
            warnings=validate_ast(ast),
        )

    def debug(self, template: str, context: Optional[Dict[str, Any]] = None) -> DebugReport:
        """
        Dump every pipeline stage; a render failure is reported, not raised.
        """
        analysis = self.analyze(template)
        report = DebugReport(
            source=template,
            tokens=[t.to_dict() for t in analysis.tokens],
            ast=analysis.ast.to_dict(),
            tree=dump(analysis.ast),
            diagnostics=[DiagnosticModel.from_diagnostic(d) for d in analysis.diagnostics],
        )
        try:
            report.output = self.render(template, context)
        except TemplateError as e:
            report.error = str(e)
        return report

    def export(self, template: str, fmt: str = "ast") -> str:
        """
        Export a template as JSON (ast, tokens, analysis) or a text tree.

        Raises:
            ValueError: Unknown export format
        """
        fmt = fmt.lower()
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unknown export format: {fmt}")

        analysis = self.analyze(template)
        if fmt == "tree":
            return dump(analysis.ast)
        if fmt == "ast":
            data: Any = analysis.ast.to_dict()
        elif fmt == "tokens":
            data = [t.to_dict() for t in analysis.tokens]
        else:
            data = analysis.report().model_dump(mode="json")
        return json.dumps(data, ensure_ascii=False, indent=2, default=str)

    # ---------- registries ----------

    def register_filter(self, name: str, func: Callable[..., Any]) -> None:
        self.filters[name] = func

    def register_function(self, name: str, func: Callable[..., Any]) -> None:
        self.functions[name] = func

    def create_scope(self, global_vars: Optional[Dict[str, Any]] = None) -> ScopeManager:
        """Fresh scope manager sharing this engine's registries."""
        return ScopeManager(global_vars, functions=self.functions, filters=self.filters)

    # ---------- cache ----------

    def cache_stats(self) -> CacheStats:
        with self._registry_lock:
            precompiled = list(self._precompiled)
        return CacheStats(**self.cache.stats(), precompiled=precompiled)

    def clear_cache(self) -> None:
        """Drop cached and precompiled templates."""
        self.cache.clear()
        with self._registry_lock:
            self._precompiled.clear()

    def with_options(self, **changes: Any) -> "Engine":
        """
        New engine with changed options. Registries are copied, the cache is not.
        """
        engine = Engine(self.options.replace(**changes))
        engine.functions.update(self.functions)
        engine.filters.update(self.filters)
        return engine

    def stats(self) -> EngineStats:
        with self._registry_lock:
            counters = dict(self._counters)
        return EngineStats(
            tool_version=tool_version(),
            options=self.options.to_dict(),
            compilations=counters["compilations"],
            renders=counters["renders"],
            functions=sorted(self.functions),
            filters=sorted(self.filters),
            cache=self.cache_stats(),
        )


__all__ = ["Engine", "Analysis", "EXPORT_FORMATS"]
