"""Fetching remote terraform modules into a working directory.

Supported source addresses::

    git::https://example.com/infra.git//modules/vpc?ref=v1.2.0
    https://example.com/infra.git?ref=main          (path ends in .git)
    git@github.com:acme/infra.git//modules/vpc
    github.com/acme/infra//modules/vpc?ref=v1
    https://example.com/vpc.tar.gz                  (.zip, .tar, .tgz, ...)
    https://example.com/download?archive=zip
    https://example.com/modules/vpc                 (X-Terraform-Get redirect)
    /opt/modules/vpc, ./modules/vpc, file:///opt/modules/vpc

``//`` separates the repository or archive from a subdirectory inside it.
Fetching never runs terraform, so it neither initializes providers nor
touches the shared plugin cache.
"""

from __future__ import annotations

import asyncio
import os
import re
import shutil
import tarfile
import tempfile
import zipfile
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from functools import partial
from pathlib import Path
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import anyio
import httpx
from anyio import to_thread
from git import Git
from git.exc import GitError
from loguru import logger

from tfconductor.controller.reconciler.connector import GIT_CRED_DIR_ENV, GIT_CREDENTIALS_FILENAME
from tfconductor.controller.terraform.errors import ERR_DEADLINE_EXCEEDED, CancellationError, FetchError

_SKIP = shutil.ignore_patterns(".git", ".terraform")
_FORCED = re.compile(r"^([a-z0-9]+)::(.+)$")
_ARCHIVE_SUFFIXES = ("tar.gz", "tar.bz2", "tar.xz", "tgz", "tbz2", "txz", "zip", "tar")
_TERRAFORM_GET = "X-Terraform-Get"


class Getter(StrEnum):
    GIT = "git"
    HTTP = "http"
    LOCAL = "file"


@dataclass(frozen=True)
class ModuleAddress:
    getter: Getter
    url: str
    subdir: str = ""
    ref: str | None = None
    archive: str | None = None


def parse_source(source: str) -> ModuleAddress:
    """Split a module source into getter, url, subdirectory and query options."""
    src = source.strip()
    if not src:
        raise FetchError("module source is empty")

    forced = None
    if m := _FORCED.match(src):
        forced, src = m.group(1), m.group(2)

    if forced in (None, "file") and (src.startswith(("/", "./", "../")) or src.startswith("file://")):
        return ModuleAddress(Getter.LOCAL, src)

    github = forced is None and src.startswith("github.com/")
    if github:
        forced, src = "git", f"https://{src}"

    url, subdir = _split_subdir(src)

    if forced is None:
        if _looks_like_git(url):
            forced = "git"
        elif urlsplit(url).scheme in ("http", "https"):
            forced = "http"
        else:
            raise FetchError(f"unsupported module source {source!r}: expected a git, http(s) or local address")

    if forced == "git":
        url, ref = _pop_query(url, "ref")
        if github:
            parts = urlsplit(url)
            if not parts.path.endswith(".git"):
                url = urlunsplit(parts._replace(path=f"{parts.path}.git"))
        return ModuleAddress(Getter.GIT, url, subdir, ref=ref)
    if forced == "http":
        url, archive = _pop_query(url, "archive")
        return ModuleAddress(Getter.HTTP, url, subdir, archive=archive or _archive_format(urlsplit(url).path))
    if forced == "file":
        return ModuleAddress(Getter.LOCAL, url, subdir)
    raise FetchError(f"unsupported module getter {forced!r}")


def _split_subdir(src: str) -> tuple[str, str]:
    scheme_end = src.find("://")
    start = 0 if scheme_end < 0 else scheme_end + 3
    idx = src.find("//", start)
    if idx < 0:
        return src, ""
    url, subdir = src[:idx], src[idx + 2 :]
    if "?" in subdir:
        subdir, query = subdir.split("?", 1)
        url = f"{url}?{query}"
    return url, subdir


def _pop_query(url: str, key: str) -> tuple[str, str | None]:
    parts = urlsplit(url)
    if not parts.query:
        return url, None
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    value = next((v for k, v in pairs if k == key), None)
    rest = [(k, v) for k, v in pairs if k != key]
    return urlunsplit(parts._replace(query=urlencode(rest))), value


def _looks_like_git(url: str) -> bool:
    if url.startswith("git@"):
        return True
    parts = urlsplit(url)
    return parts.scheme in ("git", "ssh", "git+ssh") or parts.path.endswith(".git")


def _archive_format(path: str) -> str | None:
    for suffix in _ARCHIVE_SUFFIXES:
        if path.endswith(f".{suffix}"):
            return suffix
    return None


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    left = deadline - asyncio.get_running_loop().time()
    if left <= 0:
        raise CancellationError(ERR_DEADLINE_EXCEEDED)
    return left


def _module_dir(root: Path, subdir: str) -> Path:
    if not subdir:
        return root
    base = root.resolve()
    target = (base / subdir).resolve()
    if not target.is_relative_to(base):
        raise FetchError(f"subdirectory {subdir!r} escapes the fetched module")
    if not target.is_dir():
        raise FetchError(f"subdirectory {subdir!r} not found in the fetched module")
    return target


def _local_path(url: str, dst: Path) -> Path:
    path = Path(urlsplit(url).path) if url.startswith("file://") else Path(url)
    if not path.is_absolute():
        path = dst / path
    if not path.is_dir():
        raise FetchError(f"local module {url!r} is not a directory")
    return path


def _git_fetch(repo_dir: Path, url: str, ref: str | None, env: Mapping[str, str], timeout: float | None) -> None:
    g = Git(repo_dir)
    g.init("--quiet", env=env)
    g.fetch("--quiet", "--depth=1", url, ref or "HEAD", env=env, kill_after_timeout=timeout)
    g.checkout("--quiet", "FETCH_HEAD", env=env)


def _extract(archive: Path, fmt: str, out: Path) -> None:
    if fmt == "zip":
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(out)
    else:
        with tarfile.open(archive, "r:*") as tf:
            tf.extractall(out, filter="data")


class TerraformModuleFetcher:
    """Fetches git repositories, http archives and local directories.

    The module is fetched into a scratch directory beside ``dst`` and then
    copied over it, so a failed fetch leaves the previous content in place.
    ``environ`` is the base environment for git; the workspace env (which
    carries ``GIT_CRED_DIR`` when git credentials are staged) is layered
    on top.
    """

    def __init__(
        self,
        *,
        environ: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._environ = environ
        self._transport = transport

    async def fetch(
        self, source: str, dst: Path, env: Mapping[str, str], *, deadline: float | None = None
    ) -> None:
        addr = parse_source(source)
        logger.debug("Fetching {} module into {}", addr.getter, dst)
        staging = Path(await to_thread.run_sync(partial(tempfile.mkdtemp, prefix=".fetch-", dir=dst.parent)))
        try:
            root = await self._get(addr, staging, dst, env, deadline)
            module_dir = _module_dir(root, addr.subdir)
            await to_thread.run_sync(partial(shutil.copytree, module_dir, dst, ignore=_SKIP, dirs_exist_ok=True))
        finally:
            await to_thread.run_sync(partial(shutil.rmtree, staging, ignore_errors=True))

    async def _get(
        self, addr: ModuleAddress, staging: Path, dst: Path, env: Mapping[str, str], deadline: float | None
    ) -> Path:
        if addr.getter is Getter.GIT:
            return await self._get_git(addr, staging, env, deadline)
        if addr.getter is Getter.HTTP:
            return await self._get_http(addr, staging, dst, env, deadline)
        return _local_path(addr.url, dst)

    def git_environment(self, env: Mapping[str, str]) -> dict[str, str]:
        merged = dict(self._environ if self._environ is not None else os.environ)
        merged.update(env)
        merged["GIT_TERMINAL_PROMPT"] = "0"
        if cred_dir := merged.get(GIT_CRED_DIR_ENV):
            merged.update({
                "GIT_CONFIG_COUNT": "1",
                "GIT_CONFIG_KEY_0": "credential.helper",
                "GIT_CONFIG_VALUE_0": f"store --file={Path(cred_dir) / GIT_CREDENTIALS_FILENAME}",
            })
        return merged

    async def _get_git(
        self, addr: ModuleAddress, staging: Path, env: Mapping[str, str], deadline: float | None
    ) -> Path:
        repo_dir = staging / "repo"
        repo_dir.mkdir()
        git_env = self.git_environment(env)
        try:
            await to_thread.run_sync(
                partial(_git_fetch, repo_dir, addr.url, addr.ref, git_env, _remaining(deadline))
            )
        except GitError as exc:
            if deadline is not None and asyncio.get_running_loop().time() >= deadline:
                raise CancellationError(ERR_DEADLINE_EXCEEDED) from exc
            raise FetchError(f"git fetch failed: {exc}") from exc
        return repo_dir

    async def _get_http(
        self, addr: ModuleAddress, staging: Path, dst: Path, env: Mapping[str, str], deadline: float | None
    ) -> Path:
        archive = staging / "archive"
        try:
            with anyio.fail_after(_remaining(deadline)):
                async with httpx.AsyncClient(transport=self._transport, follow_redirects=True) as client:
                    if addr.archive is None:
                        # Terraform's module redirect protocol: the real source is in a header.
                        resp = await client.get(addr.url, params={"terraform-get": "1"})
                        resp.raise_for_status()
                        location = resp.headers.get(_TERRAFORM_GET)
                        if not location:
                            raise FetchError(f"{addr.url} is not an archive and sent no {_TERRAFORM_GET} header")
                        redirected = parse_source(urljoin(str(resp.url), location))
                        if redirected.getter is Getter.LOCAL or (
                            redirected.getter is Getter.HTTP and redirected.archive is None
                        ):
                            raise FetchError(f"{_TERRAFORM_GET} from {addr.url} is not a git or archive source")
                        root = await self._get(redirected, staging, dst, env, deadline)
                        return _module_dir(root, redirected.subdir)
                    async with client.stream("GET", addr.url) as resp:
                        resp.raise_for_status()
                        async with await anyio.open_file(archive, "wb") as f:
                            async for chunk in resp.aiter_bytes():
                                await f.write(chunk)
        except TimeoutError as exc:
            raise CancellationError(ERR_DEADLINE_EXCEEDED) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"cannot download module: {exc}") from exc

        out = staging / "unpacked"
        try:
            await to_thread.run_sync(partial(_extract, archive, addr.archive, out))
        except (zipfile.BadZipFile, tarfile.TarError) as exc:
            raise FetchError(f"cannot unpack {addr.archive} archive: {exc}") from exc
        return out
