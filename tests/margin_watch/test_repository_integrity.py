from __future__ import annotations

import ast
from pathlib import Path

PACKAGE_ROOT = Path(__file__).resolve().parents[2] / "margin_watch"


def _modules() -> list[Path]:
    return sorted(path for path in PACKAGE_ROOT.rglob("*.py") if path.name != "__init__.py")


def test_every_module_has_a_docstring() -> None:
    missing = [
        str(path.relative_to(PACKAGE_ROOT))
        for path in _modules()
        if not ast.get_docstring(ast.parse(path.read_text(encoding="utf-8")))
    ]
    assert not missing, f"Modules without a docstring: {', '.join(missing)}"
