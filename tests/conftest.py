from __future__ import annotations

from pathlib import Path
import sys


def _prepend_to_syspath(*paths: Path) -> None:
    cleaned: list[str] = []
    seen: set[str] = set()

    def add(item: str) -> None:
        text = str(item or '').strip()
        if not text:
            return
        key = text.replace('\\', '/').lower()
        if key in seen:
            return
        seen.add(key)
        cleaned.append(text)

    for path in paths:
        if path.is_dir():
            add(str(path))
    for item in list(sys.path):
        add(item)
    sys.path[:] = cleaned


_TESTS_DIR = Path(__file__).resolve().parent
# src for the package under test, tests/ for the shared fakes in support.py
_prepend_to_syspath(_TESTS_DIR.parent / 'src', _TESTS_DIR)
