"""
Менеджер областей видимости.

Единственное изменяемое состояние рендера: стек фреймов переменных
(фрейм 0 - глобальный, никогда не снимается), встроенные литералы и
реестры функций и фильтров.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from .builtins import default_filters, default_functions
from .errors import EvaluationError, ScopeStackError, TemplateError, UnknownFilter, UnknownFunction
from .operators import UNDEFINED, is_missing

logger = logging.getLogger(__name__)

BUILTIN_LITERALS: Dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": UNDEFINED,
}


class ScopeManager:
    """
    Лексическое окружение рендера.

    Фреймы снимаются строго в обратном порядке; для гарантии снятия
    на любом пути выхода используется frame().
    """

    def __init__(
        self,
        global_vars: Optional[Dict[str, Any]] = None,
        *,
        functions: Optional[Dict[str, Callable[..., Any]]] = None,
        filters: Optional[Dict[str, Callable[..., Any]]] = None,
    ):
        self.builtins: Dict[str, Any] = dict(BUILTIN_LITERALS)
        self.functions: Dict[str, Callable[..., Any]] = functions if functions is not None else default_functions()
        self.filters: Dict[str, Callable[..., Any]] = filters if filters is not None else default_filters()
        self._frames: List[Dict[str, Any]] = [dict(global_vars or {})]

    # ---------- фреймы ----------

    def push_scope(self, bindings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        frame = dict(bindings or {})
        self._frames.append(frame)
        return frame

    def pop_scope(self) -> Dict[str, Any]:
        """
        Raises:
            ScopeStackError: При попытке снять глобальный фрейм
        """
        if len(self._frames) <= 1:
            raise ScopeStackError("Cannot pop the global scope")
        return self._frames.pop()

    @contextmanager
    def frame(self, bindings: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        """
        Фрейм на время блока with; снимается и при исключении.
        """
        pushed = self.push_scope(bindings)
        try:
            yield pushed
        finally:
            in_order = self._frames[-1] is pushed
            self._unwind_to(pushed)
        if not in_order:
            raise ScopeStackError("Scope frames were popped out of order")

    def _unwind_to(self, pushed: Dict[str, Any]) -> None:
        """Снимает фреймы до pushed включительно (если он ещё на стеке)."""
        for index in range(len(self._frames) - 1, 0, -1):
            if self._frames[index] is pushed:
                del self._frames[index:]
                return

    @property
    def depth(self) -> int:
        return len(self._frames)

    def current_scope(self) -> Dict[str, Any]:
        return self._frames[-1]

    def global_scope(self) -> Dict[str, Any]:
        return self._frames[0]

    def clear_scopes(self) -> None:
        """Оставляет только глобальный фрейм."""
        del self._frames[1:]

    # ---------- переменные ----------

    def get_variable(self, name: str) -> Any:
        """
        Поиск от внутреннего фрейма к внешнему, затем встроенные литералы.
        Никогда не бросает: неизвестное имя даёт UNDEFINED.
        """
        for frame in reversed(self._frames):
            if name in frame:
                return frame[name]
        return self.builtins.get(name, UNDEFINED)

    def set_variable(self, name: str, value: Any) -> None:
        self._frames[-1][name] = value

    def set_global_variable(self, name: str, value: Any) -> None:
        self._frames[0][name] = value

    def has_variable(self, name: str) -> bool:
        if name in self.builtins:
            return True
        return any(name in frame for frame in self._frames)

    def resolve_property(self, obj: Any, name: str) -> Any:
        """
        Свойство уже вычисленного значения. Отсутствующий ключ или
        неподходящее основание дают UNDEFINED.
        """
        if is_missing(obj):
            return UNDEFINED
        if isinstance(obj, dict):
            return obj.get(name, UNDEFINED)
        if isinstance(obj, (list, tuple, str)):
            if name == "length":
                return len(obj)
            return UNDEFINED
        if name.startswith("_"):
            return UNDEFINED
        return getattr(obj, name, UNDEFINED)

    def resolve_array_access(self, obj: Any, index: Any) -> Any:
        if is_missing(obj):
            return UNDEFINED
        if isinstance(obj, (list, tuple, str)):
            if isinstance(index, bool):
                return UNDEFINED
            try:
                position = int(index) if not isinstance(index, float) or index.is_integer() else None
            except (TypeError, ValueError):
                if index == "length":
                    return len(obj)
                return UNDEFINED
            if position is None or position < 0 or position >= len(obj):
                return UNDEFINED
            return obj[position]
        if isinstance(obj, dict):
            try:
                if index in obj:
                    return obj[index]
            except TypeError:
                # Нехешируемый ключ
                return UNDEFINED
            return obj.get(str(index), UNDEFINED)
        return UNDEFINED

    def resolve_property_path(self, path: str) -> Any:
        """Путь через точку: user.address.city"""
        head, *rest = path.split(".")
        value = self.get_variable(head)
        for part in rest:
            value = self.resolve_property(value, part)
            if value is UNDEFINED:
                break
        return value

    # ---------- функции и фильтры ----------

    def register_function(self, name: str, func: Callable[..., Any]) -> None:
        self.functions[name] = func

    def register_filter(self, name: str, func: Callable[..., Any]) -> None:
        self.filters[name] = func

    def has_function(self, name: str) -> bool:
        return name in self.functions

    def has_filter(self, name: str) -> bool:
        return name in self.filters

    def call_function(self, name: str, args: Optional[List[Any]] = None) -> Any:
        """
        Raises:
            UnknownFunction: Функция не зарегистрирована
            EvaluationError: Функция бросила исключение
        """
        func = self.functions.get(name)
        if func is None:
            raise UnknownFunction(name)
        try:
            return func(*(args or []))
        except TemplateError:
            raise
        except Exception as e:
            raise EvaluationError(f"Function '{name}' failed: {e}", name=name) from e

    def apply_filter(self, value: Any, name: str, args: Optional[List[Any]] = None) -> Any:
        """
        Raises:
            UnknownFilter: Фильтр не зарегистрирован
            EvaluationError: Фильтр бросил исключение
        """
        func = self.filters.get(name)
        if func is None:
            raise UnknownFilter(name)
        try:
            return func(value, *(args or []))
        except TemplateError:
            raise
        except Exception as e:
            raise EvaluationError(f"Filter '{name}' failed: {e}", name=name) from e

    # ---------- производные менеджеры ----------

    def create_child_scope(self, bindings: Optional[Dict[str, Any]] = None) -> "ScopeManager":
        """
        Независимый менеджер с общими реестрами и копией стека фреймов.
        """
        child = ScopeManager(functions=self.functions, filters=self.filters)
        child.builtins = self.builtins
        child._frames = [dict(frame) for frame in self._frames]
        if bindings:
            child.push_scope(bindings)
        return child

    # ---------- интроспекция ----------

    def all_variables(self) -> Dict[str, Any]:
        """Все видимые переменные; внутренние фреймы перекрывают внешние."""
        result: Dict[str, Any] = dict(self.builtins)
        for frame in self._frames:
            result.update(frame)
        return result

    def scope_chain(self) -> List[Dict[str, Any]]:
        return [
            {
                "level": level,
                "is_global": level == 0,
                "variables": dict(frame),
                "size": len(frame),
            }
            for level, frame in enumerate(self._frames)
        ]

    def debug(self) -> Dict[str, Any]:
        return {
            "scope_count": len(self._frames),
            "current_scope_size": len(self._frames[-1]),
            "global_scope_size": len(self._frames[0]),
            "builtin_count": len(self.builtins),
            "function_count": len(self.functions),
            "filter_count": len(self.filters),
            "scope_chain": self.scope_chain(),
        }


__all__ = ["ScopeManager", "BUILTIN_LITERALS"]
