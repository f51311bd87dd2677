"""Shared fixtures: small executable Python scripts used as child programs."""

from __future__ import annotations

import os
import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"

# Children get a minimal environment, so point them at the package explicitly.
CHILD_ENV = {"PYTHONPATH": str(SRC_DIR)}

ScriptWriter = Callable[[str, str], Path]


def write_script(directory: Path, name: str, body: str) -> Path:
    script = directory / name
    script.write_text(
        f"#!{sys.executable}\n" + textwrap.dedent(body).lstrip("\n"),
        encoding="utf-8",
    )
    os.chmod(script, 0o755)
    return script


@pytest.fixture
def script(tmp_path: Path) -> ScriptWriter:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _write(name: str, body: str) -> Path:
        return write_script(bin_dir, name, body)

    return _write
