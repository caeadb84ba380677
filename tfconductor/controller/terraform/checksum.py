"""Content checksum of a workspace working directory.

The checksum decides whether ``terraform init`` must run again: identical
content yields an identical checksum.  Version control metadata and the
provider binaries init itself installs are excluded, otherwise every init
would invalidate the next comparison.

Equivalent to::

    find . -path ./.git -prune -o -path ./.terraform/providers -prune -o \\
        -type f -exec md5sum {} + | LC_ALL=C sort | md5sum
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

EXCLUDED_PATHS = frozenset({".git", ".terraform/providers"})

_CHUNK = 1 << 16


def _file_digest(path: Path) -> str:
    h = hashlib.md5(usedforsecurity=False)
    with path.open("rb") as f:
        while chunk := f.read(_CHUNK):
            h.update(chunk)
    return h.hexdigest()


def iter_files(root: Path) -> list[str]:
    """Relative POSIX paths of every regular file under ``root``, excluded paths pruned."""
    files: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        rel = Path(dirpath).relative_to(root)
        dirnames[:] = sorted(d for d in dirnames if (rel / d).as_posix() not in EXCLUDED_PATHS)
        for name in filenames:
            relpath = (rel / name).as_posix()
            if relpath in EXCLUDED_PATHS:
                continue
            full = Path(dirpath) / name
            # find -type f: symlinks are not regular files
            if full.is_symlink() or not full.is_file():
                continue
            files.append(relpath)
    return files


def compute_checksum(root: str | Path) -> str:
    """Return the hex checksum of ``root``.  Blocking; run it in a worker thread."""
    root = Path(root)
    lines = [f"{_file_digest(root / rel)}  ./{rel}\n".encode() for rel in iter_files(root)]
    lines.sort()
    return hashlib.md5(b"".join(lines), usedforsecurity=False).hexdigest()
