"""
Мягкие диагностики шаблона.

Распознаватель, лексер и парсер не бросают исключения на структурных
проблемах, а накапливают записи Diagnostic, которые возвращаются вместе
с AST, построенным по принципу best-effort.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional


class DiagnosticKind(enum.Enum):
    """Категории диагностик."""
    UNMATCHED_BLOCK_START = "unmatched_block_start"
    UNMATCHED_BLOCK_END = "unmatched_block_end"
    MISPLACED_CLAUSE = "misplaced_clause"
    UNCLOSED_INTERPOLATION = "unclosed_interpolation"
    EMPTY_INTERPOLATION = "empty_interpolation"
    INVALID_VARIABLE = "invalid_variable"
    UNEXPECTED_CHARACTER = "unexpected_character"
    UNEXPECTED_TOKEN = "unexpected_token"
    INVALID_FOR = "invalid_for"
    INVALID_TAG = "invalid_tag"
    EMPTY_BLOCK = "empty_block"
    MAX_DEPTH = "max_depth"


class Severity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class Diagnostic:
    """
    Одна диагностика с позицией в исходном тексте.

    Attributes:
        kind: Категория проблемы
        message: Человекочитаемое описание
        position: Смещение в исходном тексте (если известно)
        line: Номер строки (с 1)
        column: Номер колонки (с 1)
        severity: error или warning
        source: Стадия конвейера, обнаружившая проблему
    """
    kind: DiagnosticKind
    message: str
    position: Optional[int] = None
    line: Optional[int] = None
    column: Optional[int] = None
    severity: Severity = Severity.ERROR
    source: str = "recognizer"

    def key(self) -> tuple:
        """Ключ для устранения дублей между стадиями."""
        return self.kind, self.position

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "position": self.position,
            "line": self.line,
            "column": self.column,
            "severity": self.severity.value,
            "source": self.source,
        }

    def __str__(self) -> str:
        where = f" at {self.line}:{self.column}" if self.line is not None else ""
        return f"{self.severity.value}: {self.message}{where}"


def merge_diagnostics(*groups: Iterable[Diagnostic]) -> List[Diagnostic]:
    """
    Объединяет диагностики нескольких стадий.

    Одна и та же проблема (вид + позиция) остаётся в первом вхождении,
    результат упорядочен по позиции.
    """
    seen = set()
    merged: List[Diagnostic] = []
    for group in groups:
        for diag in group:
            if diag.key() in seen:
                continue
            seen.add(diag.key())
            merged.append(diag)
    merged.sort(key=lambda d: (d.position is None, d.position or 0))
    return merged


__all__ = ["DiagnosticKind", "Severity", "Diagnostic", "merge_diagnostics"]
