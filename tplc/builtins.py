"""
Встроенные функции и фильтры шаблонизатора.

Каждый реестр создаётся заново для движка: функции и фильтры не живут
в глобальном состоянии процесса.
"""

from __future__ import annotations

import html
import json
import random as _random
from datetime import date, datetime
from typing import Any, Callable, Dict, List

from .operators import UNDEFINED, SafeString, is_missing, to_number, to_text

# ---------- функции ----------


def fn_len(value: Any = UNDEFINED) -> int:
    if isinstance(value, (list, tuple, str, dict)):
        return len(value)
    return 0


def fn_keys(value: Any = UNDEFINED) -> List[Any]:
    if isinstance(value, dict):
        return list(value.keys())
    return []


def fn_values(value: Any = UNDEFINED) -> List[Any]:
    if isinstance(value, dict):
        return list(value.values())
    return []


def fn_range(start: Any = 0, end: Any = None, step: Any = 1) -> List[Any]:
    """
    range(end) или range(start, end, step). Шаг 0 даёт пустой список.
    """
    if end is None:
        start, end = 0, start
    start_num, end_num, step_num = to_number(start) or 0, to_number(end) or 0, to_number(step) or 0

    result: List[Any] = []
    current = start_num
    if step_num > 0:
        while current < end_num:
            result.append(current)
            current += step_num
    elif step_num < 0:
        while current > end_num:
            result.append(current)
            current += step_num
    return result


def fn_default(value: Any = UNDEFINED, fallback: Any = "") -> Any:
    if is_missing(value) or value == "":
        return fallback
    return value


def fn_now() -> datetime:
    return datetime.now()


def fn_random(low: Any = 0, high: Any = 1) -> float:
    low_num, high_num = to_number(low) or 0, to_number(high)
    if high_num is None:
        high_num = 1
    return _random.random() * (high_num - low_num) + low_num


def fn_round(value: Any, decimals: Any = 0) -> Any:
    number = to_number(value)
    if number is None:
        return value
    places = int(to_number(decimals) or 0)
    rounded = round(number, places)
    return int(rounded) if places <= 0 else rounded


# ---------- фильтры ----------


def f_upper(value: Any) -> str:
    return to_text(value).upper()


def f_lower(value: Any) -> str:
    return to_text(value).lower()


def f_capitalize(value: Any) -> str:
    text = to_text(value)
    return text[:1].upper() + text[1:].lower()


def f_trim(value: Any) -> str:
    return to_text(value).strip()


def f_reverse(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return list(reversed(value))
    return to_text(value)[::-1]


def f_sort(value: Any) -> Any:
    if not isinstance(value, (list, tuple)):
        return value
    try:
        return sorted(value)
    except TypeError:
        # Разнотипные элементы: сортировка по тексту
        return sorted(value, key=to_text)


def f_join(value: Any, separator: Any = ",") -> str:
    if isinstance(value, (list, tuple)):
        return to_text(separator).join(to_text(item) for item in value)
    return to_text(value)


def f_split(value: Any, separator: Any = ",") -> List[str]:
    sep = to_text(separator)
    text = to_text(value)
    if not sep:
        return list(text)
    return text.split(sep)


def f_slice(value: Any, start: Any = 0, end: Any = None) -> Any:
    begin = int(to_number(start) or 0)
    stop = None if is_missing(end) else int(to_number(end) or 0)
    if isinstance(value, (list, tuple)):
        return list(value[begin:stop])
    return to_text(value)[begin:stop]


def f_first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else UNDEFINED
    return to_text(value)[:1]


def f_last(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[-1] if value else UNDEFINED
    return to_text(value)[-1:]


def f_escape(value: Any) -> SafeString:
    """HTML-экранирование: & < > " ' """
    return SafeString(html.escape(to_text(value), quote=True))


def f_safe(value: Any) -> SafeString:
    return SafeString(to_text(value))


def _as_datetime(value: Any):
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Метка времени в миллисекундах
        try:
            return datetime.fromtimestamp(value / 1000)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def f_date(value: Any, fmt: Any = "YYYY-MM-DD") -> str:
    """
    Форматирование даты. Поддерживаемые маркеры: YYYY MM DD HH mm ss.
    Неразбираемое значение выводится как есть.
    """
    moment = _as_datetime(value)
    if moment is None:
        return to_text(value)
    return (
        to_text(fmt)
        .replace("YYYY", f"{moment.year:04d}")
        .replace("MM", f"{moment.month:02d}")
        .replace("DD", f"{moment.day:02d}")
        .replace("HH", f"{moment.hour:02d}")
        .replace("mm", f"{moment.minute:02d}")
        .replace("ss", f"{moment.second:02d}")
    )


def f_truncate(value: Any, length: Any = 50, suffix: Any = "...") -> str:
    text = to_text(value)
    limit = int(to_number(length) or 0)
    if len(text) > limit:
        return text[:limit] + to_text(suffix)
    return text


def f_pluralize(count: Any, singular: Any = "", plural: Any = None) -> str:
    if to_number(count) == 1:
        return to_text(singular)
    if is_missing(plural) or plural == "":
        return to_text(singular) + "s"
    return to_text(plural)


def f_currency(value: Any, symbol: Any = "$") -> Any:
    number = to_number(value)
    if number is None or is_missing(value):
        return value
    return f"{to_text(symbol)}{number:.2f}"


def f_json(value: Any) -> str:
    if value is UNDEFINED:
        return ""
    return json.dumps(value, ensure_ascii=False, indent=2, default=str)


def default_functions() -> Dict[str, Callable[..., Any]]:
    return {
        "len": fn_len,
        "keys": fn_keys,
        "values": fn_values,
        "range": fn_range,
        "default": fn_default,
        "now": fn_now,
        "random": fn_random,
        "round": fn_round,
    }


def default_filters() -> Dict[str, Callable[..., Any]]:
    return {
        "upper": f_upper,
        "lower": f_lower,
        "capitalize": f_capitalize,
        "trim": f_trim,
        "reverse": f_reverse,
        "sort": f_sort,
        "join": f_join,
        "split": f_split,
        "slice": f_slice,
        "first": f_first,
        "last": f_last,
        "escape": f_escape,
        "safe": f_safe,
        "date": f_date,
        "truncate": f_truncate,
        "pluralize": f_pluralize,
        "currency": f_currency,
        "json": f_json,
        "default": fn_default,
    }


__all__ = ["default_functions", "default_filters"]
