"""
Report models for analyze/debug/stats output.

Reports are pydantic models; callers serialize them with
`model_dump(mode="json")`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .diagnostics import Diagnostic


class DiagnosticModel(BaseModel):
    kind: str
    message: str
    position: Optional[int] = None
    line: Optional[int] = None
    column: Optional[int] = None
    severity: str = "error"
    source: str = "recognizer"

    @classmethod
    def from_diagnostic(cls, diag: Diagnostic) -> "DiagnosticModel":
        return cls(**diag.to_dict())


class AnalysisReport(BaseModel):
    """Summary of a template analysis: structure and problems found."""
    tool_version: str
    template_name: Optional[str] = None
    valid: bool
    token_count: int
    tokens_by_kind: Dict[str, int] = Field(default_factory=dict)
    nodes_by_type: Dict[str, int] = Field(default_factory=dict)
    max_depth: int = 0
    variables: List[str] = Field(default_factory=list)
    functions: List[str] = Field(default_factory=list)
    blocks: List[str] = Field(default_factory=list)
    diagnostics: List[DiagnosticModel] = Field(default_factory=list)
    warnings: List[DiagnosticModel] = Field(default_factory=list)


class DebugReport(BaseModel):
    """Full dump of every pipeline stage for a single template."""
    source: str
    tokens: List[Dict[str, Any]] = Field(default_factory=list)
    ast: Dict[str, Any] = Field(default_factory=dict)
    tree: str = ""
    diagnostics: List[DiagnosticModel] = Field(default_factory=list)
    output: Optional[str] = None
    error: Optional[str] = None


class CacheStats(BaseModel):
    enabled: bool
    size: int
    max_size: int
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    names: List[str] = Field(default_factory=list)
    precompiled: List[str] = Field(default_factory=list)


class EngineStats(BaseModel):
    tool_version: str
    options: Dict[str, Any]
    functions: List[str]
    filters: List[str]
    cache: CacheStats
    compilations: int = 0
    renders: int = 0


__all__ = [
    "DiagnosticModel",
    "AnalysisReport",
    "DebugReport",
    "CacheStats",
    "EngineStats",
]
