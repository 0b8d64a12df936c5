"""Bundle the helper program into a self-contained zipapp."""

from __future__ import annotations

import logging
import shutil
import tempfile
import zipapp
from pathlib import Path

logger = logging.getLogger(__name__)

ENTRY_POINT = "frame_inspector.main:main"
_ENTRY_MODULE, _, _ENTRY_FUNCTION = ENTRY_POINT.partition(":")
# The archive exits with the return code of the entry point
_LAUNCHER = f"import sys\n\nfrom {_ENTRY_MODULE} import {_ENTRY_FUNCTION}\n\nsys.exit({_ENTRY_FUNCTION}())\n"
PACKAGE_DIR = Path(__file__).resolve().parent
_IGNORED = shutil.ignore_patterns("__pycache__", "*.pyc")


def create_helper_archive(target: str | Path | None = None) -> Path:
    """
    Build a zipapp that runs the helper program.

    :param target: Path of the archive; a temporary file when omitted.
    :return: Path of the written archive.
    """
    if target is None:
        handle = tempfile.NamedTemporaryFile(prefix="frame_inspector_helper_", suffix=".pyz", delete=False)
        handle.close()
        target = handle.name
    target = Path(target)

    with tempfile.TemporaryDirectory(prefix="frame_inspector_build_") as staging:
        shutil.copytree(PACKAGE_DIR, Path(staging) / PACKAGE_DIR.name, ignore=_IGNORED)
        (Path(staging) / "__main__.py").write_text(_LAUNCHER, encoding="utf-8")
        zipapp.create_archive(staging, target=target)
    logger.info("Helper archive written to %s", target)
    return target
