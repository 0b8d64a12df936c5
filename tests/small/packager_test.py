"""Tests of the helper archive builder."""

import subprocess
import sys
import zipfile
from pathlib import Path

from frame_inspector.common import EXIT_USAGE
from frame_inspector.packager import create_helper_archive


def test_archive_contains_package(tmp_path: Path):
    """Should bundle the package and a launcher."""
    archive = create_helper_archive(tmp_path / "helper.pyz")
    with zipfile.ZipFile(archive) as bundle:
        names = bundle.namelist()
        launcher = bundle.read("__main__.py").decode()
    assert "__main__.py" in names
    assert "frame_inspector/main.py" in names
    assert "frame_inspector/agent/listener.py" in names
    assert not any("__pycache__" in name for name in names)
    assert "sys.exit(main())" in launcher


def test_archive_exit_code(tmp_path: Path):
    """Should exit with the helper's own exit code."""
    archive = create_helper_archive(tmp_path / "helper.pyz")
    completed = subprocess.run([sys.executable, str(archive)], capture_output=True, text=True)
    assert completed.returncode == EXIT_USAGE
    assert "usage" in completed.stderr


def test_archive_default_location():
    """Should write to a temporary file when no target is given."""
    archive = create_helper_archive()
    try:
        assert archive.suffix == ".pyz"
        assert zipfile.is_zipfile(archive)
    finally:
        archive.unlink()
