"""Tests for fetching remote modules over git, http and the local filesystem."""

from __future__ import annotations

import asyncio
import io
import tarfile
import zipfile
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
from git.exc import GitCommandError

from tfconductor.controller.reconciler.module import Getter, ModuleAddress, TerraformModuleFetcher, parse_source
from tfconductor.controller.terraform.errors import CancellationError, FetchError

MAIN_TF = 'resource "null_resource" "remote" {}\n'


@pytest.fixture
def dst(tmp_path: Path) -> Path:
    d = tmp_path / "tf" / "0b3e2f5c-7a55-4e8e-a2a6-2b6f1f3c9d10"
    d.mkdir(parents=True)
    (d / "tfconductor-provider-config.tf").write_text("")
    return d


def assert_scratch_removed(dst: Path) -> None:
    assert sorted(p.name for p in dst.parent.iterdir()) == [dst.name]


# ---------------------------------------------------------------------------
# Source addresses
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("source", "expected"),
    [
        (
            "git::https://example.org/infra.git//modules/vpc?ref=v1.2.0",
            ModuleAddress(Getter.GIT, "https://example.org/infra.git", "modules/vpc", ref="v1.2.0"),
        ),
        (
            "https://example.org/infra.git?ref=main",
            ModuleAddress(Getter.GIT, "https://example.org/infra.git", ref="main"),
        ),
        (
            "git@github.com:acme/infra.git//modules/vpc",
            ModuleAddress(Getter.GIT, "git@github.com:acme/infra.git", "modules/vpc"),
        ),
        (
            "github.com/acme/infra//modules/vpc?ref=v1",
            ModuleAddress(Getter.GIT, "https://github.com/acme/infra.git", "modules/vpc", ref="v1"),
        ),
        (
            "https://example.org/vpc.tar.gz",
            ModuleAddress(Getter.HTTP, "https://example.org/vpc.tar.gz", archive="tar.gz"),
        ),
        (
            "https://example.org/download?archive=zip&version=3",
            ModuleAddress(Getter.HTTP, "https://example.org/download?version=3", archive="zip"),
        ),
        ("https://example.org/modules/vpc", ModuleAddress(Getter.HTTP, "https://example.org/modules/vpc")),
        ("/opt/modules/vpc", ModuleAddress(Getter.LOCAL, "/opt/modules/vpc")),
        ("./modules/vpc", ModuleAddress(Getter.LOCAL, "./modules/vpc")),
        ("file:///opt/modules/vpc", ModuleAddress(Getter.LOCAL, "file:///opt/modules/vpc")),
    ],
)
def test_parse_source(source: str, expected: ModuleAddress) -> None:
    assert parse_source(source) == expected


@pytest.mark.parametrize("source", ["", "hashicorp/consul/aws", "s3::https://bucket/key.zip"])
def test_parse_source_rejects_unsupported(source: str) -> None:
    with pytest.raises(FetchError):
        parse_source(source)


# ---------------------------------------------------------------------------
# Local
# ---------------------------------------------------------------------------


@pytest.fixture
def local_module(tmp_path: Path) -> Path:
    src = tmp_path / "modules" / "vpc"
    (src / "nested").mkdir(parents=True)
    (src / "main.tf").write_text(MAIN_TF)
    (src / "nested" / "vars.tf").write_text('variable "x" {}\n')
    (src / ".terraform").mkdir()
    return src


async def test_fetch_local_copies_over_existing_dir(local_module: Path, dst: Path) -> None:
    await TerraformModuleFetcher(environ={}).fetch(str(local_module), dst, {})

    assert (dst / "main.tf").read_text() == MAIN_TF
    assert (dst / "nested" / "vars.tf").exists()
    assert (dst / "tfconductor-provider-config.tf").exists()
    assert not (dst / ".terraform").exists()
    assert_scratch_removed(dst)


async def test_fetch_local_relative_resolves_against_destination(local_module: Path, dst: Path) -> None:
    await TerraformModuleFetcher(environ={}).fetch("../../modules/vpc", dst, {})
    assert (dst / "main.tf").read_text() == MAIN_TF


async def test_fetch_local_missing(dst: Path, tmp_path: Path) -> None:
    with pytest.raises(FetchError, match="not a directory"):
        await TerraformModuleFetcher(environ={}).fetch(str(tmp_path / "nope"), dst, {})
    assert_scratch_removed(dst)


# ---------------------------------------------------------------------------
# HTTP archives
# ---------------------------------------------------------------------------


def zip_bytes(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


def tar_gz_bytes(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def serve(routes: dict[str, httpx.Response]) -> tuple[httpx.MockTransport, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return routes.get(request.url.path, httpx.Response(404))

    return httpx.MockTransport(handler), seen


async def test_fetch_zip_archive_subdir(dst: Path) -> None:
    transport, _ = serve({
        "/infra.zip": httpx.Response(200, content=zip_bytes({"modules/vpc/main.tf": MAIN_TF, "README.md": "hi"})),
    })
    fetcher = TerraformModuleFetcher(environ={}, transport=transport)

    await fetcher.fetch("https://example.org/infra.zip//modules/vpc", dst, {})

    assert (dst / "main.tf").read_text() == MAIN_TF
    assert not (dst / "README.md").exists()
    assert_scratch_removed(dst)


async def test_fetch_tar_gz_archive(dst: Path) -> None:
    transport, _ = serve({"/vpc.tgz": httpx.Response(200, content=tar_gz_bytes({"main.tf": MAIN_TF}))})
    await TerraformModuleFetcher(environ={}, transport=transport).fetch("https://example.org/vpc.tgz", dst, {})
    assert (dst / "main.tf").read_text() == MAIN_TF


async def test_fetch_follows_terraform_get_header(dst: Path) -> None:
    transport, seen = serve({
        "/modules/vpc": httpx.Response(204, headers={"X-Terraform-Get": "/archives/vpc.zip"}),
        "/archives/vpc.zip": httpx.Response(200, content=zip_bytes({"main.tf": MAIN_TF})),
    })
    await TerraformModuleFetcher(environ={}, transport=transport).fetch("https://example.org/modules/vpc", dst, {})

    assert (dst / "main.tf").read_text() == MAIN_TF
    assert seen[0].url.params["terraform-get"] == "1"


async def test_fetch_http_not_found(dst: Path) -> None:
    transport, _ = serve({})
    with pytest.raises(FetchError, match="404"):
        await TerraformModuleFetcher(environ={}, transport=transport).fetch("https://example.org/gone.zip", dst, {})
    assert_scratch_removed(dst)


async def test_fetch_corrupt_archive(dst: Path) -> None:
    transport, _ = serve({"/vpc.zip": httpx.Response(200, content=b"not a zip")})
    with pytest.raises(FetchError, match="cannot unpack zip archive"):
        await TerraformModuleFetcher(environ={}, transport=transport).fetch("https://example.org/vpc.zip", dst, {})


async def test_fetch_missing_subdir(dst: Path) -> None:
    transport, _ = serve({"/vpc.zip": httpx.Response(200, content=zip_bytes({"main.tf": MAIN_TF}))})
    with pytest.raises(FetchError, match="not found"):
        await TerraformModuleFetcher(environ={}, transport=transport).fetch(
            "https://example.org/vpc.zip//modules/nope", dst, {}
        )


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------


class FakeGit:
    """Stands in for ``git.Git``; checkout materialises a small repository."""

    calls: list[tuple[str, tuple, dict]]
    fail_fetch = False

    def __init__(self, working_dir: Path) -> None:
        self.working_dir = Path(working_dir)

    def init(self, *args, **kwargs) -> None:
        self.calls.append(("init", args, kwargs))

    def fetch(self, *args, **kwargs) -> None:
        self.calls.append(("fetch", args, kwargs))
        if self.fail_fetch:
            raise GitCommandError(["git", "fetch"], 128, b"fatal: repository not found")

    def checkout(self, *args, **kwargs) -> None:
        self.calls.append(("checkout", args, kwargs))
        (self.working_dir / ".git").mkdir()
        (self.working_dir / "modules" / "vpc").mkdir(parents=True)
        (self.working_dir / "modules" / "vpc" / "main.tf").write_text(MAIN_TF)


@pytest.fixture
def fake_git():
    FakeGit.calls = []
    FakeGit.fail_fetch = False
    with patch("tfconductor.controller.reconciler.module.Git", FakeGit):
        yield FakeGit


async def test_fetch_git(fake_git: type[FakeGit], dst: Path) -> None:
    fetcher = TerraformModuleFetcher(environ={"PATH": "/usr/bin", "HOME": "/home/ctrl"})

    await fetcher.fetch(
        "git::https://example.org/infra.git//modules/vpc?ref=v1.2.0",
        dst,
        {"GIT_CRED_DIR": "/tmp/tf/ws", "TF_VAR_x": "1"},
    )

    assert (dst / "main.tf").read_text() == MAIN_TF
    assert not (dst / ".git").exists()
    assert [name for name, _, _ in fake_git.calls] == ["init", "fetch", "checkout"]

    _, args, kwargs = fake_git.calls[1]
    assert args == ("--quiet", "--depth=1", "https://example.org/infra.git", "v1.2.0")
    assert kwargs["kill_after_timeout"] is None
    env = kwargs["env"]
    assert env["HOME"] == "/home/ctrl"
    assert env["TF_VAR_x"] == "1"
    assert env["GIT_TERMINAL_PROMPT"] == "0"
    assert env["GIT_CONFIG_KEY_0"] == "credential.helper"
    assert env["GIT_CONFIG_VALUE_0"] == "store --file=/tmp/tf/ws/.git-credentials"
    assert_scratch_removed(dst)


async def test_fetch_git_default_ref_without_credentials(fake_git: type[FakeGit], dst: Path) -> None:
    await TerraformModuleFetcher(environ={}).fetch("github.com/acme/infra", dst, {})

    _, args, kwargs = fake_git.calls[1]
    assert args[-2:] == ("https://github.com/acme/infra.git", "HEAD")
    assert "GIT_CONFIG_COUNT" not in kwargs["env"]


async def test_fetch_git_bounded_by_deadline(fake_git: type[FakeGit], dst: Path) -> None:
    deadline = asyncio.get_running_loop().time() + 30
    await TerraformModuleFetcher(environ={}).fetch("git@github.com:acme/infra.git", dst, {}, deadline=deadline)

    _, _, kwargs = fake_git.calls[1]
    assert 0 < kwargs["kill_after_timeout"] <= 30


async def test_fetch_git_failure(fake_git: type[FakeGit], dst: Path) -> None:
    fake_git.fail_fetch = True
    with pytest.raises(FetchError, match="git fetch failed"):
        await TerraformModuleFetcher(environ={}).fetch("git::https://example.org/missing.git", dst, {})
    assert_scratch_removed(dst)


async def test_fetch_after_deadline(fake_git: type[FakeGit], dst: Path) -> None:
    deadline = asyncio.get_running_loop().time() - 1
    with pytest.raises(CancellationError, match="context deadline exceeded"):
        await TerraformModuleFetcher(environ={}).fetch("git::https://example.org/infra.git", dst, {}, deadline=deadline)
    assert fake_git.calls == []
    assert_scratch_removed(dst)
