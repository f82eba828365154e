"""
Кэш скомпилированных шаблонов.

Ограниченный словарь в порядке вставки: при превышении границы
вытесняется самая старая вставка. Повторная компиляция того же имени
перезаписывает запись (побеждает последний писатель).
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Dict, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TemplateCache(Generic[T]):
    """
    Потокобезопасный кэш по имени шаблона.

    Счётчики hits/misses/evictions доступны через stats().
    """

    def __init__(self, max_size: int = 100, *, enabled: bool = True):
        self.max_size = max_size
        self.enabled = enabled
        self._entries: "OrderedDict[str, T]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, name: str) -> Optional[T]:
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                self.misses += 1
            else:
                self.hits += 1
            return entry

    def put(self, name: str, entry: T) -> None:
        if not self.enabled:
            return
        with self._lock:
            # Перекомпиляция не обновляет порядок вставки
            self._entries[name] = entry
            while len(self._entries) > self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug(f"Evicted template '{evicted}' from cache")

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = self.misses = self.evictions = 0

    def stats(self) -> Dict[str, object]:
        with self._lock:
            return {
                "enabled": self.enabled,
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "names": list(self._entries),
            }


__all__ = ["TemplateCache"]
