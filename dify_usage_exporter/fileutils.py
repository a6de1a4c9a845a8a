"""
File Utilities
==============
Atomic writes for spool, failed and watermark files.
"""

import os
from pathlib import Path

OWNER_READ_WRITE = 0o600


def write_file_atomic(path: Path, content: str, mode: int = OWNER_READ_WRITE) -> None:
    """
    Write content to a temp file next to path, then rename it into place.

    Readers never observe a partially written file. The temp file is
    removed if anything fails before the rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")

    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
