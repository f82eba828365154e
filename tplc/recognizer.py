"""
Распознаватель синтаксиса шаблонов.

Библиотека регулярных выражений, которая находит в исходном тексте
конструкции шаблона (интерполяции, блочные теги, комментарии, фильтры,
вызовы функций, литералы, операторы, аксессоры) и сообщает каждое
вхождение вместе с его позицией.

Поддерживает повторный разбор подстроки, ранее извлечённой из большего
совпадения (фильтры и функции внутри интерполяции), и структурную
валидацию, которая возвращает мягкие диагностики вместо исключений.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from .diagnostics import Diagnostic, DiagnosticKind, Severity

logger = logging.getLogger(__name__)

IDENT = r"[A-Za-z_$][\w$]*"

NAME_PATH_RE = re.compile(rf"{IDENT}(?:\.{IDENT})*")
NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
_WORDISH_RE = re.compile(r"[\w$.]+")

# Блоки, требующие закрывающего тега
END_KEYWORDS: Dict[str, str] = {
    "if": "endif",
    "for": "endfor",
    "each": "endeach",
    "while": "endwhile",
    "unless": "endunless",
    "block": "endblock",
}

# Промежуточные ветки условного блока
CLAUSE_KEYWORDS = frozenset({"elseif", "else"})

# Одиночные теги без закрывающей пары
STANDALONE_KEYWORDS = frozenset({"include", "extends"})

OPERATOR_PRECEDENCE: Dict[str, int] = {
    "||": 1,
    "&&": 2,
    "==": 3, "!=": 3,
    "<": 4, ">": 4, "<=": 4, ">=": 4,
    "+": 5, "-": 5,
    "*": 6, "/": 6, "%": 6,
}

_QUOTES = ("'", '"')
_OPENERS = {"(": ")", "[": "]"}
_CLOSERS = {")", "]"}


def operator_precedence(operator: str) -> int:
    """Приоритет бинарного оператора (0 для неизвестных)."""
    return OPERATOR_PRECEDENCE.get(operator, 0)


def block_end_for(keyword: str) -> str:
    """Закрывающий тег для открывающего ключевого слова."""
    return END_KEYWORDS.get(keyword, f"end{keyword}")


@dataclass(frozen=True)
class Match:
    """
    Одно вхождение конструкции.

    Attributes:
        category: Категория паттерна (variable, block_start, filter, ...)
        text: Совпавший текст
        groups: Захваченные подгруппы
        start: Начало в исходном тексте (с учётом базового смещения)
        end: Конец (не включается)
        extra: Разобранные части (аргументы, сегменты аксессора)
    """
    category: str
    text: str
    groups: Tuple[Optional[str], ...]
    start: int
    end: int
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "text": self.text,
            "groups": list(self.groups),
            "start": self.start,
            "end": self.end,
        }


@dataclass
class Recognition:
    """Результат распознавания шаблона по категориям."""
    variables: List[Match] = field(default_factory=list)
    block_starts: List[Match] = field(default_factory=list)
    block_ends: List[Match] = field(default_factory=list)
    comments: List[Match] = field(default_factory=list)
    tags: List[Match] = field(default_factory=list)
    filters: List[Match] = field(default_factory=list)
    functions: List[Match] = field(default_factory=list)

    def constructs(self) -> List[Match]:
        """
        Конструкции верхнего уровня в порядке следования.

        Перекрывающиеся совпадения отбрасываются: побеждает то, что
        начинается раньше (комментарий скрывает теги внутри себя).
        """
        candidates = sorted(
            [*self.variables, *self.block_starts, *self.block_ends, *self.comments, *self.tags],
            key=lambda m: (m.start, -m.end),
        )
        selected: List[Match] = []
        last_end = 0
        for match in candidates:
            if match.start < last_end:
                continue
            selected.append(match)
            last_end = match.end
        return selected

    def summary(self) -> Dict[str, int]:
        return {
            "variables": len(self.variables),
            "block_starts": len(self.block_starts),
            "block_ends": len(self.block_ends),
            "comments": len(self.comments),
            "tags": len(self.tags),
            "filters": len(self.filters),
            "functions": len(self.functions),
        }

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "variables": [m.to_dict() for m in self.variables],
            "block_starts": [m.to_dict() for m in self.block_starts],
            "block_ends": [m.to_dict() for m in self.block_ends],
            "comments": [m.to_dict() for m in self.comments],
            "tags": [m.to_dict() for m in self.tags],
            "filters": [m.to_dict() for m in self.filters],
            "functions": [m.to_dict() for m in self.functions],
        }


@dataclass
class ExpressionRecognition:
    """Элементы выражения внутри {{ }} или {% %}."""
    strings: List[Match] = field(default_factory=list)
    functions: List[Match] = field(default_factory=list)
    accessors: List[Match] = field(default_factory=list)
    keyword_literals: List[Match] = field(default_factory=list)
    numbers: List[Match] = field(default_factory=list)
    operators: List[Match] = field(default_factory=list)
    identifiers: List[Match] = field(default_factory=list)

    def by_priority(self) -> List[Match]:
        """
        Все совпадения в порядке приоритета захвата.

        Строки, функции и аксессоры вкладываются друг в друга
        (`items[len(items) - 1]`, `len(user.name)`, `upper("x")`), поэтому
        среди них первым захватывает внешний: раньше начавшийся, затем
        более длинный. Вложенные части разбираются рекурсивно.
        """
        outer = sorted(
            [*self.strings, *self.functions, *self.accessors],
            key=lambda m: (m.start, -m.end),
        )
        return [
            *outer,
            *self.keyword_literals,
            *self.numbers,
            *self.operators,
            *self.identifiers,
        ]


class SyntaxRecognizer:
    """
    Распознаватель конструкций шаблона на регулярных выражениях.

    Каждая категория - отдельный скомпилированный паттерн. Совпадения
    одной категории не перекрываются; разрешение перекрытий между
    категориями остаётся лексеру.
    """

    # Спецификация паттернов: (категория, regex, флаги)
    PATTERN_SPECS: List[Tuple[str, str, int]] = [
        # Интерполяция {{ expr }}
        ("variable", r"\{\{(.*?)\}\}", re.DOTALL),

        # Блочные теги
        ("block_start",
         r"\{%\s*(if|elseif|else|for|each|while|unless|include|extends|block)(?![\w$])\s*(.*?)\s*%\}",
         re.DOTALL),
        ("block_end", r"\{%\s*(end(?:if|for|each|while|unless|block))\s*%\}", 0),

        # Любой тег - для поиска неизвестных ключевых слов
        ("tag", r"\{%(.*?)%\}", re.DOTALL),

        # Комментарии {# ... #}
        ("comment", r"\{#(.*?)#\}", re.DOTALL),

        # Фильтр: одиночная черта (не часть ||) и имя
        ("filter", rf"(?<!\|)\|(?!\|)\s*({IDENT})", 0),

        # Начало вызова функции: name(
        ("function", rf"(?<![\w$.])({IDENT})\s*\(", 0),

        # Начало цепочки аксессоров: name. или name[
        ("accessor", rf"(?<![\w$.])({IDENT})(?=\.[A-Za-z_$]|\[)", 0),

        # Операторы (двухсимвольные раньше односимвольных)
        ("operator", r"==|!=|<=|>=|&&|\|\||<|>|[+\-*/%]", 0),

        # Строковые литералы с экранированием
        ("string", r"(['\"])((?:\\.|(?!\1)[^\\])*)\1", re.DOTALL),

        # Числа: 123, 123.45
        ("number", r"(?<![\w$.])\d+(?:\.\d+)?(?![\w$])", 0),

        # Ключевые литералы
        ("keyword_literal", r"(?<![\w$.])(true|false|null)(?![\w$])", 0),

        # Идентификаторы
        ("identifier", rf"(?<![\w$.])({IDENT})", 0),

        # Пробельные символы
        ("whitespace", r"[^\S\n]+", 0),
        ("newline", r"\r?\n", 0),
    ]

    def __init__(self):
        self._patterns: Dict[str, Pattern[str]] = {}
        for name, pattern, flags in self.PATTERN_SPECS:
            self._patterns[name] = re.compile(pattern, flags)

    # ---------- управление паттернами ----------

    def get_pattern(self, category: str) -> Pattern[str]:
        try:
            return self._patterns[category]
        except KeyError:
            raise ValueError(f"Unknown pattern: {category}") from None

    def add_pattern(self, category: str, pattern: str, flags: int = 0) -> None:
        """Регистрирует пользовательскую категорию."""
        self._patterns[category] = re.compile(pattern, flags)

    def remove_pattern(self, category: str) -> None:
        self._patterns.pop(category, None)

    @property
    def categories(self) -> List[str]:
        return list(self._patterns)

    # ---------- сканирование ----------

    def scan(
        self,
        text: str,
        category: str,
        base: int = 0,
        exclude: Sequence[Tuple[int, int]] = (),
    ) -> List[Match]:
        """
        Находит все неперекрывающиеся совпадения категории.

        Args:
            text: Текст (или подстрока большего совпадения)
            category: Имя паттерна
            base: Смещение подстроки в исходном тексте
            exclude: Локальные интервалы, совпадения внутри которых пропускаются

        Returns:
            Совпадения с абсолютными позициями
        """
        pattern = self.get_pattern(category)
        matches: List[Match] = []
        position = 0
        length = len(text)

        while position <= length:
            found = pattern.search(text, position)
            if found is None:
                break

            start, end = found.span()
            # Пустое совпадение: сдвигаемся хотя бы на один символ
            position = end if end > start else end + 1
            if end == start:
                continue
            if _inside(start, exclude):
                continue

            matches.append(Match(
                category=category,
                text=found.group(0),
                groups=found.groups(),
                start=base + start,
                end=base + end,
                extra={"group_starts": tuple(
                    base + found.start(i) if found.start(i) >= 0 else -1
                    for i in range(1, pattern.groups + 1)
                )},
            ))

        return matches

    def recognize(self, text: str) -> Recognition:
        """
        Распознаёт конструкции верхнего уровня и фильтры/функции внутри них.
        """
        recognition = Recognition(
            variables=self.scan(text, "variable"),
            block_starts=self.scan(text, "block_start"),
            block_ends=self.scan(text, "block_end"),
            comments=self.scan(text, "comment"),
        )

        known = {(m.start, m.end) for m in (*recognition.block_starts, *recognition.block_ends)}
        recognition.tags = [m for m in self.scan(text, "tag") if (m.start, m.end) not in known]

        for variable in recognition.variables:
            inner = variable.groups[0] or ""
            inner_base = variable.start + 2
            protected = [(m.start - inner_base, m.end - inner_base)
                         for m in self.scan(inner, "string", inner_base)]
            recognition.filters.extend(self.scan_filters(inner, inner_base))
            recognition.functions.extend(self.scan_functions(inner, inner_base, protected))

        for block in recognition.block_starts:
            condition = block.groups[1] or ""
            if not condition:
                continue
            offset = block.extra["group_starts"][1]
            protected = [(m.start - offset, m.end - offset)
                         for m in self.scan(condition, "string", offset)]
            recognition.functions.extend(self.scan_functions(condition, offset, protected))

        logger.debug(f"Recognized constructs: {recognition.summary()}")
        return recognition

    def recognize_expression(self, expression: str, base: int = 0) -> ExpressionRecognition:
        """
        Распознаёт элементы выражения. Строковые литералы защищают своё
        содержимое от остальных категорий.
        """
        strings = self.scan(expression, "string", base)
        protected = [(m.start - base, m.end - base) for m in strings]

        return ExpressionRecognition(
            strings=strings,
            functions=self.scan_functions(expression, base, protected),
            accessors=self.scan_accessors(expression, base, protected),
            keyword_literals=self.scan(expression, "keyword_literal", base, protected),
            numbers=self.scan(expression, "number", base, protected),
            operators=self.scan(expression, "operator", base, protected),
            identifiers=self.scan(expression, "identifier", base, protected),
        )

    def scan_filters(self, expression: str, base: int = 0) -> List[Match]:
        """
        Фильтры верхнего уровня внутри выражения интерполяции.

        Группы совпадения: (имя, текст аргументов). В extra["args"]
        лежат пары (текст аргумента, абсолютное смещение).
        """
        top_level = top_level_mask(expression)
        heads = [
            m for m in self.scan(expression, "filter")
            if top_level[m.start]
        ]

        filters: List[Match] = []
        for i, head in enumerate(heads):
            end = heads[i + 1].start if i + 1 < len(heads) else len(expression)
            tail = expression[head.end:end]
            tail_stripped = tail.strip()

            args: List[Tuple[str, int]] = []
            if tail_stripped.startswith(":"):
                args_offset = head.end + tail.index(":") + 1
                for piece, offset in split_top_level(expression[args_offset:end], ":"):
                    if piece.strip():
                        lead = len(piece) - len(piece.lstrip())
                        args.append((piece.strip(), base + args_offset + offset + lead))

            filters.append(Match(
                category="filter",
                text=expression[head.start:end].rstrip(),
                groups=(head.groups[0], tail_stripped[1:].strip() if tail_stripped.startswith(":") else None),
                start=base + head.start,
                end=base + head.start + len(expression[head.start:end].rstrip()),
                extra={"args": args, "garbage": "" if not tail_stripped or tail_stripped.startswith(":") else tail_stripped},
            ))
        return filters

    def scan_functions(
        self,
        expression: str,
        base: int = 0,
        exclude: Sequence[Tuple[int, int]] = (),
    ) -> List[Match]:
        """
        Вызовы функций с балансировкой скобок; вложенные вызовы остаются
        внутри текста аргументов внешнего вызова.
        """
        functions: List[Match] = []
        last_end = 0
        for head in self.scan(expression, "function", 0, exclude):
            if head.start < last_end:
                continue
            open_index = head.end - 1
            close_index = find_closing(expression, open_index)
            if close_index is None:
                continue

            args_text = expression[open_index + 1:close_index]
            args = []
            for piece, offset in split_top_level(args_text, ","):
                if piece.strip():
                    lead = len(piece) - len(piece.lstrip())
                    args.append((piece.strip(), base + open_index + 1 + offset + lead))

            functions.append(Match(
                category="function",
                text=expression[head.start:close_index + 1],
                groups=(head.groups[0], args_text),
                start=base + head.start,
                end=base + close_index + 1,
                extra={"args": args},
            ))
            last_end = close_index + 1
        return functions

    def scan_accessors(
        self,
        expression: str,
        base: int = 0,
        exclude: Sequence[Tuple[int, int]] = (),
    ) -> List[Match]:
        """
        Цепочки доступа: obj.prop, arr[index], users[0].name.

        extra["segments"] - список ("property", имя, смещение) или
        ("index", текст выражения, смещение).
        """
        accessors: List[Match] = []
        last_end = 0
        for head in self.scan(expression, "accessor", 0, exclude):
            if head.start < last_end:
                continue
            position = head.end
            segments: List[Tuple[str, str, int]] = []

            while position < len(expression):
                char = expression[position]
                if char == ".":
                    name = re.match(IDENT, expression[position + 1:])
                    if name is None:
                        break
                    segments.append(("property", name.group(0), base + position + 1))
                    position += 1 + name.end()
                elif char == "[":
                    close_index = find_closing(expression, position)
                    if close_index is None:
                        break
                    inner = expression[position + 1:close_index]
                    lead = len(inner) - len(inner.lstrip())
                    segments.append(("index", inner.strip(), base + position + 1 + lead))
                    position = close_index + 1
                else:
                    break

            if not segments:
                continue

            kind = "array" if segments[-1][0] == "index" else "property"
            accessors.append(Match(
                category="accessor",
                text=expression[head.start:position],
                groups=(head.groups[0], kind),
                start=base + head.start,
                end=base + position,
                extra={"segments": segments},
            ))
            last_end = position
        return accessors

    # ---------- валидация ----------

    def validate(self, text: str, recognition: Optional[Recognition] = None) -> List[Diagnostic]:
        """
        Структурная проверка шаблона. Никогда не бросает исключений.

        Проверяет:
        - непарные открывающие/закрывающие блоки
        - elseif/else вне условного блока
        - незакрытые интерполяции
        - пустые интерполяции и некорректные имена переменных
        - неизвестные теги
        """
        recognition = recognition or self.recognize(text)
        constructs = recognition.constructs()
        diagnostics: List[Diagnostic] = []

        def report(kind: DiagnosticKind, message: str, position: int,
                   severity: Severity = Severity.ERROR) -> None:
            line, column = line_col(text, position)
            diagnostics.append(Diagnostic(kind, message, position, line, column, severity, "recognizer"))

        # Блоки: стек открытых конструкций, [совпадение, был ли else]
        stack: List[List[Any]] = []
        for construct in constructs:
            if construct.category == "block_start":
                keyword = construct.groups[0] or ""
                if keyword in CLAUSE_KEYWORDS:
                    if not stack or stack[-1][0].groups[0] != "if":
                        report(DiagnosticKind.MISPLACED_CLAUSE,
                               f"'{keyword}' outside of an if block", construct.start)
                    elif stack[-1][1]:
                        report(DiagnosticKind.MISPLACED_CLAUSE,
                               f"'{keyword}' after 'else'", construct.start)
                    elif keyword == "else":
                        stack[-1][1] = True
                elif keyword in END_KEYWORDS:
                    stack.append([construct, False])

            elif construct.category == "block_end":
                keyword = construct.groups[0] or ""
                index = _find_opener(stack, keyword)
                if index is None:
                    report(DiagnosticKind.UNMATCHED_BLOCK_END,
                           f"Unexpected '{keyword}' without matching block", construct.start)
                    continue
                for entry in stack[index + 1:]:
                    opener = entry[0]
                    report(DiagnosticKind.UNMATCHED_BLOCK_START,
                           f"Unclosed '{opener.groups[0]}' block", opener.start)
                del stack[index:]

            elif construct.category == "tag":
                body = (construct.groups[0] or "").strip()
                keyword = body.split()[0] if body else ""
                report(DiagnosticKind.INVALID_TAG, f"Unknown tag '{keyword}'", construct.start)

            elif construct.category == "variable":
                self._validate_variable(construct, report)

        for entry in stack:
            opener = entry[0]
            report(DiagnosticKind.UNMATCHED_BLOCK_START,
                   f"Unclosed '{opener.groups[0]}' block", opener.start)

        # Разделители вне распознанных конструкций
        covered = [(c.start, c.end) for c in constructs]
        for delimiter, message in (("{{", "Unclosed variable interpolation"),
                                   ("}}", "Unmatched '}}'"),
                                   ("{%", "Unclosed tag")):
            for found in re.finditer(re.escape(delimiter), text):
                if not _inside(found.start(), covered):
                    kind = (DiagnosticKind.INVALID_TAG if delimiter == "{%"
                            else DiagnosticKind.UNCLOSED_INTERPOLATION)
                    report(kind, message, found.start())

        diagnostics.sort(key=lambda d: d.position or 0)
        return diagnostics

    def _validate_variable(self, construct: Match, report) -> None:
        inner = construct.groups[0] or ""
        if not inner.strip():
            report(DiagnosticKind.EMPTY_INTERPOLATION, "Empty variable interpolation", construct.start)
            return

        filters = self.scan_filters(inner)
        head = inner[:filters[0].start] if filters else inner
        head = head.strip()
        if (
            _WORDISH_RE.fullmatch(head)
            and not NAME_PATH_RE.fullmatch(head)
            and not NUMBER_RE.fullmatch(head)
        ):
            report(DiagnosticKind.INVALID_VARIABLE, f"Invalid variable name: {head}", construct.start)


# ---------- вспомогательные функции ----------

def _inside(position: int, spans: Iterable[Tuple[int, int]]) -> bool:
    for start, end in spans:
        if start <= position < end:
            return True
    return False


def _find_opener(stack: List[List[Any]], end_keyword: str) -> Optional[int]:
    for index in range(len(stack) - 1, -1, -1):
        if block_end_for(stack[index][0].groups[0]) == end_keyword:
            return index
    return None


def line_col(text: str, position: int) -> Tuple[int, int]:
    """Строка и колонка (с 1) для смещения."""
    line = text.count("\n", 0, position) + 1
    column = position - (text.rfind("\n", 0, position) + 1) + 1
    return line, column


def find_closing(text: str, open_index: int) -> Optional[int]:
    """
    Индекс закрывающей скобки для скобки в open_index.

    Учитывает вложенность () и [] и строковые литералы.
    """
    stack: List[str] = []
    quote: Optional[str] = None
    index = open_index
    while index < len(text):
        char = text[index]
        if quote:
            if char == "\\":
                index += 2
                continue
            if char == quote:
                quote = None
        elif char in _QUOTES:
            quote = char
        elif char in _OPENERS:
            stack.append(_OPENERS[char])
        elif char in _CLOSERS:
            if not stack or stack[-1] != char:
                return None
            stack.pop()
            if not stack:
                return index
        index += 1
    return None


def top_level_mask(text: str) -> List[bool]:
    """
    Для каждого символа: True, если он вне строк и вне скобок.
    """
    mask = [False] * (len(text) + 1)
    depth = 0
    quote: Optional[str] = None
    escaped = False
    for index, char in enumerate(text):
        if quote:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
            continue
        if char in _QUOTES:
            quote = char
            continue
        if char in _OPENERS:
            depth += 1
            continue
        if char in _CLOSERS:
            depth = max(0, depth - 1)
            continue
        mask[index] = depth == 0
    mask[len(text)] = True
    return mask


def split_top_level(text: str, separator: str) -> List[Tuple[str, int]]:
    """
    Делит текст по разделителю верхнего уровня.

    Returns:
        Пары (кусок, смещение куска в text)
    """
    mask = top_level_mask(text)
    pieces: List[Tuple[str, int]] = []
    start = 0
    for index, char in enumerate(text):
        if char == separator and mask[index]:
            pieces.append((text[start:index], start))
            start = index + 1
    pieces.append((text[start:], start))
    return pieces


__all__ = [
    "SyntaxRecognizer",
    "Match",
    "Recognition",
    "ExpressionRecognition",
    "OPERATOR_PRECEDENCE",
    "END_KEYWORDS",
    "CLAUSE_KEYWORDS",
    "STANDALONE_KEYWORDS",
    "NAME_PATH_RE",
    "operator_precedence",
    "block_end_for",
    "line_col",
    "find_closing",
    "top_level_mask",
    "split_top_level",
]
