"""Shared pytest fixtures for all test modules."""

import os
import shlex
import stat
import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

from consensusflow.config import load_config
from consensusflow.models import UploadedFile
from consensusflow.workspace import Workspace

PIPELINE_TOOLS = [
    "bowtie2-build",
    "fastqc",
    "fastp",
    "bowtie2",
    "samtools",
    "bedtools",
    "bcftools",
    "multiqc",
]

# Touches the file following any output flag, reports on stderr, succeeds.
FAKE_TOOL = """#!/usr/bin/env bash
prev=""
for arg in "$@"; do
  case "$prev" in
    -o|-O|-S|-fo|-h) [ -d "$arg" ] || touch "$arg" ;;
  esac
  prev="$arg"
done
echo "$(basename "$0") $1 ok" >&2
"""

PYTHON_SHIM = """#!/usr/bin/env bash
exec {python} "$@"
"""


def write_executable(path: Path, content: str) -> Path:
    path.write_text(content)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def test_config() -> Dict[str, Any]:
    """Packaged configuration tuned for fast tests."""
    cfg = load_config()
    cfg["poll_interval"] = 0.05
    cfg["check_tools"] = False
    return cfg


@pytest.fixture
def workspace(tmp_path, test_config) -> Workspace:
    return Workspace(tmp_path, test_config).ensure()


@pytest.fixture
def make_uploads(tmp_path):
    """Create empty files in tmp_path and return them as an upload set."""

    def _make(names: List[str]) -> List[UploadedFile]:
        uploads = []
        for name in names:
            path = tmp_path / name
            path.write_bytes(b"")
            uploads.append(UploadedFile(original_name=name, stored_path=path))
        return uploads

    return _make


@pytest.fixture
def fake_tools(tmp_path, monkeypatch):
    """Put fake versions of every pipeline tool first on PATH.

    Returns the bin directory so a test can overwrite single tools.
    """
    bin_dir = tmp_path / "fake_bin"
    bin_dir.mkdir()
    for tool in PIPELINE_TOOLS:
        write_executable(bin_dir / tool, FAKE_TOOL)
    # the plan calls python3 for its masking step
    write_executable(bin_dir / "python3", PYTHON_SHIM.format(python=shlex.quote(sys.executable)))
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    return bin_dir


@pytest.fixture
def make_script(tmp_path):
    """Write an executable bash script that stops at the first failing command."""

    def _make(body: str, name: str = "plan.sh") -> Path:
        return write_executable(
            tmp_path / name, "#!/usr/bin/env bash\nset -euo pipefail\n" + body
        )

    return _make
