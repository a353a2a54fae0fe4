"""Packaging checks for the application modules."""

from __future__ import annotations

import ast
import importlib
import re
import sys
import tomllib
from fnmatch import fnmatch
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
PACKAGES = ("app", "catalogy")
DISTRIBUTION_NAMES = {"pydantic_settings": "pydantic-settings"}


def _module_names() -> list[str]:
    names: list[str] = []
    for package in PACKAGES:
        for path in sorted((REPO_ROOT / package).rglob("*.py")):
            parts = list(path.relative_to(REPO_ROOT).with_suffix("").parts)
            if parts[-1] == "__init__":
                parts.pop()
            names.append(".".join(parts))
    return names


def _declared_distributions() -> set[str]:
    with (REPO_ROOT / "pyproject.toml").open("rb") as handle:
        project = tomllib.load(handle)["project"]
    declared = set()
    for requirement in project["dependencies"]:
        name = re.split(r"[\[<>=!~; ]", requirement, maxsplit=1)[0]
        declared.add(name.lower())
    return declared


def _third_party_imports() -> dict[str, set[str]]:
    found: dict[str, set[str]] = {}
    for package in PACKAGES:
        for path in (REPO_ROOT / package).rglob("*.py"):
            tree = ast.parse(path.read_text(encoding="utf-8"))
            for node in ast.walk(tree):
                if isinstance(node, ast.Import):
                    roots = [alias.name.split(".")[0] for alias in node.names]
                elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
                    roots = [node.module.split(".")[0]]
                else:
                    continue
                for root in roots:
                    if root in sys.stdlib_module_names or root in PACKAGES:
                        continue
                    found.setdefault(root, set()).add(str(path.relative_to(REPO_ROOT)))
    return found


@pytest.mark.parametrize("module_name", _module_names())
def test_module_imports_cleanly(module_name: str) -> None:
    importlib.import_module(module_name)


def test_every_package_directory_is_installed() -> None:
    with (REPO_ROOT / "pyproject.toml").open("rb") as handle:
        find = tomllib.load(handle)["tool"]["setuptools"]["packages"]["find"]

    packages = {name.rsplit(".", 1)[0] for name in _module_names() if "." in name}
    packages.update(PACKAGES)
    for package in sorted(packages):
        assert any(fnmatch(package, pattern) for pattern in find["include"]), package


def test_third_party_imports_are_declared() -> None:
    declared = _declared_distributions()

    missing = {
        root: sorted(paths)
        for root, paths in _third_party_imports().items()
        if DISTRIBUTION_NAMES.get(root, root).lower() not in declared
    }

    assert not missing, f"Imports without a declared dependency: {missing}"
