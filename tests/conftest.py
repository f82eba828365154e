from pathlib import Path

import pytest

from tplc import Engine


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Переменные окружения пакета не должны влиять на тесты."""
    monkeypatch.delenv("TPLC_CACHE", raising=False)
    monkeypatch.delenv("TPLC_DEBUG", raising=False)


@pytest.fixture
def engine() -> Engine:
    return Engine()


@pytest.fixture
def write(tmp_path: Path):
    """Записывает файл в tmp_path и возвращает его путь."""
    def _write(name: str, text: str) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path
    return _write
