"""
tplc: template-language compiler.

Pipeline: SyntaxRecognizer -> TemplateLexer -> TemplateParser ->
TemplateCompiler, wired together by Engine.
"""

from .compiler import CompiledTemplate, TemplateCompiler
from .config import EngineOptions, load_options
from .diagnostics import Diagnostic, DiagnosticKind
from .engine import Analysis, Engine
from .errors import (
    ConfigError,
    EvaluationError,
    ParseError,
    ScopeStackError,
    TemplateError,
    TemplateNotFound,
    TemplateSyntaxError,
    UnknownFilter,
    UnknownFunction,
)
from .lexer import TemplateLexer
from .operators import UNDEFINED, SafeString
from .parser import TemplateParser
from .recognizer import SyntaxRecognizer
from .scope import ScopeManager

__all__ = [
    "Engine",
    "Analysis",
    "EngineOptions",
    "load_options",
    "SyntaxRecognizer",
    "TemplateLexer",
    "TemplateParser",
    "TemplateCompiler",
    "CompiledTemplate",
    "ScopeManager",
    "Diagnostic",
    "DiagnosticKind",
    "UNDEFINED",
    "SafeString",
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
