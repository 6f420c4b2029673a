from __future__ import annotations

import ast
from pathlib import Path

import pytest

SCRIPTS_DIR = Path(__file__).resolve().parents[1] / "scripts"

EXPECTED_SCRIPT_FILES = {
    "check_route.py",
    "fetch_hazards.py",
}


def _all_script_paths() -> list[Path]:
    return sorted(path for path in SCRIPTS_DIR.glob("*.py") if path.is_file())


def _is_main_guard(node: ast.AST) -> bool:
    if not isinstance(node, ast.If):
        return False
    test = node.test
    if not isinstance(test, ast.Compare):
        return False
    if len(test.ops) != 1 or not isinstance(test.ops[0], ast.Eq):
        return False
    if not isinstance(test.left, ast.Name) or test.left.id != "__name__":
        return False
    if len(test.comparators) != 1:
        return False
    comparator = test.comparators[0]
    return isinstance(comparator, ast.Constant) and comparator.value == "__main__"


def test_script_inventory_is_complete() -> None:
    discovered = {path.name for path in _all_script_paths()}
    assert discovered == EXPECTED_SCRIPT_FILES


@pytest.mark.parametrize("script_path", _all_script_paths(), ids=lambda p: p.name)
def test_script_source_parses(script_path: Path) -> None:
    source = script_path.read_text(encoding="utf-8")
    ast.parse(source, filename=str(script_path))


@pytest.mark.parametrize(
    "script_path",
    _all_script_paths(),
    ids=lambda p: p.name,
)
def test_executable_scripts_have_main_contract(script_path: Path) -> None:
    source = script_path.read_text(encoding="utf-8")
    module = ast.parse(source, filename=str(script_path))
    has_main_function = any(
        isinstance(node, ast.FunctionDef) and node.name == "main"
        for node in module.body
    )
    assert has_main_function
    has_main_guard = any(_is_main_guard(node) for node in module.body)
    assert has_main_guard
