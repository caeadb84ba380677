"""Working directory layout.

Every workspace gets its own directory, named after its UID::

    {tf_dir}/{uid}/                  -> rendered module, terraform state
    {tf_dir}/{uid}/{entrypoint}/     -> where terraform runs
    {tmp_root}/{uid}/.git-credentials

``tmp_root`` is ``{tmp_dir}{tf_dir}``, kept apart so that fetching a remote
module into the work dir never overwrites staged git credentials.  Both
roots are swept by the garbage collector.
"""

from __future__ import annotations

from pathlib import Path, PurePosixPath


class WorkDirPaths:
    def __init__(self, root: str | Path, tmp_root: str | Path) -> None:
        self.root = Path(root)
        self.tmp_root = Path(tmp_root)

    def workdir(self, uid: str) -> Path:
        return self.root / uid

    def git_cred_dir(self, uid: str) -> Path:
        return self.tmp_root / uid

    def entrypoint_dir(self, uid: str, entrypoint: str = "") -> Path:
        """Directory terraform runs in.  ``../`` segments are stripped."""
        base = self.workdir(uid)
        if not entrypoint:
            return base
        cleaned = entrypoint.replace("../", "")
        return base / PurePosixPath(cleaned.lstrip("/"))

    def ensure_roots(self) -> None:
        """Create both roots (idempotent)."""
        for root in (self.root, self.tmp_root):
            root.mkdir(mode=0o700, parents=True, exist_ok=True)
