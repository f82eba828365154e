"""
Конфигурация движка шаблонов.

Опции движка задаются программно, словарём или YAML-файлом.
Переменная окружения TPLC_CACHE переопределяет кэширование шаблонов.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from ruamel.yaml import YAML

from .errors import ConfigError

# --------------------------------------------------------------------------- #
# YAML loader
# --------------------------------------------------------------------------- #
_yaml = YAML(typ="safe")

_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class EngineOptions:
    """
    Опции движка.

    Attributes:
        auto_escape: HTML-экранирование результата интерполяций
        strict_mode: Диагностики при компиляции превращаются в TemplateSyntaxError
        cache_templates: Кэшировать скомпилированные шаблоны по имени
        max_cache_size: Граница кэша (вытесняется самая старая вставка)
        preserve_whitespace: Отдельные токены WHITESPACE / NEWLINE
        max_depth: Предел вложенности блоков и выражений
        strict_arithmetic: Деление на ноль - ошибка вместо 0
        max_loop_iterations: Предел итераций while
    """
    auto_escape: bool = True
    strict_mode: bool = False
    cache_templates: bool = True
    max_cache_size: int = 100
    preserve_whitespace: bool = False
    max_depth: int = 100
    strict_arithmetic: bool = False
    max_loop_iterations: int = 10000

    def __post_init__(self):
        for name in ("max_cache_size", "max_depth", "max_loop_iterations"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigError(f"Option '{name}' must be a positive integer, got {value!r}")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "EngineOptions":
        """
        Создаёт опции из словаря. Неизвестные ключи - ошибка.

        Raises:
            ConfigError: Неизвестный ключ или неверное значение
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ConfigError(f"Unknown engine option(s): {', '.join(unknown)}")
        return cls(**raw)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    def replace(self, **changes: Any) -> "EngineOptions":
        return EngineOptions.from_dict({**self.to_dict(), **changes})

    def with_env_overrides(self) -> "EngineOptions":
        """Учитывает TPLC_CACHE (0/false/no/off отключают кэш)."""
        env = os.environ.get("TPLC_CACHE", None)
        if env is None:
            return self
        return dataclasses.replace(
            self, cache_templates=env.strip().lower() not in _FALSE_VALUES
        )


def _read_yaml_map(path: Path) -> dict:
    """Читает YAML файл и возвращает словарь."""
    if not path.is_file():
        raise ConfigError(f"File not found: {path}")
    raw = _yaml.load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"YAML must be a mapping: {path}")
    return raw


def load_options(path: Path) -> EngineOptions:
    """
    Загружает опции движка из YAML.

    Файл может содержать опции на верхнем уровне или в секции `engine`.
    """
    raw = _read_yaml_map(path)
    section = raw.get("engine", raw)
    if not isinstance(section, dict):
        raise ConfigError(f"'engine' section must be a mapping: {path}")
    return EngineOptions.from_dict(dict(section))


def load_context(path: Path) -> Dict[str, Any]:
    """Контекст рендера из YAML или JSON файла."""
    return dict(_read_yaml_map(path))


__all__ = ["EngineOptions", "load_options", "load_context"]
