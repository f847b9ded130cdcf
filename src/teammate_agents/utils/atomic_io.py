"""Atomic file I/O for context snapshots."""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _tmp_path(file_path: Path) -> Path:
    # PID + thread id so concurrent writers in one process don't share a temp file
    return file_path.with_suffix(
        f"{file_path.suffix}.tmp.{os.getpid()}.{threading.get_ident()}"
    )


def atomic_write_text(file_path: Path, content: str, max_retries: int = 3) -> None:
    """Write ``content`` via temp file + rename so readers never see a partial file.

    Raises:
        OSError: If the write fails after all retries
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file = _tmp_path(file_path)

    last_error = None
    for attempt in range(max_retries):
        try:
            tmp_file.write_text(content)
            os.replace(tmp_file, file_path)
            return
        except OSError as e:
            last_error = e
            if attempt < max_retries - 1:
                logger.warning(
                    f"Failed to write {file_path} (attempt {attempt + 1}/{max_retries}): {e}"
                )
        finally:
            if tmp_file.exists():
                try:
                    tmp_file.unlink()
                except OSError:
                    logger.debug(f"Could not remove temp file {tmp_file}")

    logger.error(f"Failed to write {file_path} after {max_retries} attempts: {last_error}")
    raise last_error


def atomic_write_json(file_path: Path, data: Any, indent: int = 2) -> None:
    """Serialize ``data`` to JSON and write it atomically."""
    atomic_write_text(file_path, json.dumps(data, indent=indent, default=str))

