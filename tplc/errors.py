"""
Exception hierarchy of the template compiler.

All expected errors that a template author can fix inherit from
TemplateError. Programming errors (broken scope discipline and the like)
inherit from RuntimeError and propagate with full tracebacks.
"""

from __future__ import annotations

from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .diagnostics import Diagnostic


class TemplateError(Exception):
    """
    Base class for all user-facing errors of the template engine.

    Render-time errors get annotated while they bubble up: the innermost
    construct and the template name are attached once and never overwritten.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.template_name: Optional[str] = None
        self.construct: Optional[str] = None
        self.line: Optional[int] = None
        self.column: Optional[int] = None

    def add_context(
        self,
        *,
        template_name: Optional[str] = None,
        construct: Optional[str] = None,
        line: Optional[int] = None,
        column: Optional[int] = None,
    ) -> "TemplateError":
        if template_name and self.template_name is None:
            self.template_name = template_name
        if construct and self.construct is None:
            self.construct = construct
            self.line = line
            self.column = column
        return self

    def __str__(self) -> str:
        parts = [self.message]
        if self.construct:
            where = self.construct
            if self.line is not None:
                where += f" at {self.line}:{self.column}"
            parts.append(f"in {where}")
        if self.template_name:
            parts.append(f"(template '{self.template_name}')")
        return " ".join(parts)


class ParseError(TemplateError):
    """Unrecoverable parsing failure: exhausted token stream or nesting too deep."""

    def __init__(self, message: str, position: Optional[int] = None):
        super().__init__(message)
        self.position = position


class TemplateSyntaxError(TemplateError):
    """Raised in strict mode when building a template produced diagnostics."""

    def __init__(self, diagnostics: List["Diagnostic"]):
        first = diagnostics[0] if diagnostics else None
        summary = first.message if first else "invalid template"
        if len(diagnostics) > 1:
            summary += f" (+{len(diagnostics) - 1} more)"
        super().__init__(f"Template syntax error: {summary}")
        self.diagnostics = list(diagnostics)


class UnknownFunction(TemplateError):
    def __init__(self, name: str):
        super().__init__(f"Unknown function: {name}")
        self.name = name


class UnknownFilter(TemplateError):
    def __init__(self, name: str):
        super().__init__(f"Unknown filter: {name}")
        self.name = name


class EvaluationError(TemplateError):
    """
    Error raised while evaluating a template.

    Wraps exceptions thrown by user-registered functions and filters;
    `name` holds the function/filter that failed, the original exception
    is chained as __cause__.
    """

    def __init__(self, message: str, name: Optional[str] = None):
        super().__init__(message)
        self.name = name


class TemplateNotFound(TemplateError):
    def __init__(self, name: str):
        super().__init__(f"Template '{name}' not found. Use precompile() first.")
        self.name = name


class ConfigError(TemplateError, ValueError):
    """Invalid engine configuration."""
    pass


class ScopeStackError(RuntimeError):
    """Scope frames were pushed and popped out of order."""
    pass


__all__ = [
    "TemplateError",
    "ParseError",
    "TemplateSyntaxError",
    "UnknownFunction",
    "UnknownFilter",
    "EvaluationError",
    "TemplateNotFound",
    "ConfigError",
    "ScopeStackError",
]
