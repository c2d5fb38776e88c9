"""Tests for rollgate.deploy.artifacts (docker image commands mocked)."""

from __future__ import annotations

import json
import subprocess
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from rollgate.core.errors import ContainerRuntimeError, PreconditionError


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def image_rows(*rows: tuple[str, str, str]) -> str:
    """(tag, id, created) triples in ``docker images --format '{{json .}}'`` form."""
    return "\n".join(
        json.dumps({"Repository": "shop", "Tag": tag, "ID": image_id, "CreatedAt": created, "Size": "512MB"})
        for tag, image_id, created in rows
    )


IMAGES = image_rows(
    ("latest", "sha256:bbb", "2025-03-01 12:00:00 +0000 UTC"),
    ("20250301_120000", "sha256:bbb", "2025-03-01 12:00:00 +0000 UTC"),
    ("20250215_090000", "sha256:aaa", "2025-02-15 09:00:00 +0000 UTC"),
    ("20250320_080000", "sha256:ccc", "2025-03-20 08:00:00 +0000 UTC"),
    ("<none>", "sha256:ddd", "2025-01-01 00:00:00 +0000 UTC"),
)


@pytest.fixture
def runtime():
    runtime = MagicMock()
    runtime.run_docker.return_value = completed(stdout=IMAGES)
    return runtime


@pytest.fixture
def store(runtime):
    from rollgate.deploy.artifacts import ArtifactStore

    return ArtifactStore(runtime, clock=lambda: datetime(2025, 3, 21, 14, 5, 9))


class TestTags:
    def test_new_tag_format(self):
        from rollgate.deploy.artifacts import new_tag

        assert new_tag(datetime(2025, 3, 1, 12, 0, 0)) == "20250301_120000"


class TestList:
    def test_newest_first_and_current(self, store, make_app):
        artifacts = store.list(make_app())
        assert [a.tag for a in artifacts] == ["20250320_080000", "20250301_120000", "20250215_090000"]
        assert [a.current for a in artifacts] == [False, True, False]
        assert artifacts[1].image == "shop:20250301_120000"

    def test_current(self, store, make_app):
        assert store.current(make_app()) == "20250301_120000"

    def test_no_latest_means_no_current(self, store, runtime, make_app):
        runtime.run_docker.return_value = completed(
            stdout=image_rows(("20250215_090000", "sha256:aaa", "2025-02-15 09:00:00 +0000 UTC"))
        )
        assert store.current(make_app()) is None

    def test_unparseable_created_falls_back_to_tag(self, store, runtime, make_app):
        runtime.run_docker.return_value = completed(
            stdout=image_rows(
                ("20250101_000000", "sha256:a", "yesterday"),
                ("20250102_000000", "sha256:b", "yesterday"),
            )
        )
        assert [a.tag for a in store.list(make_app())] == ["20250102_000000", "20250101_000000"]


class TestBuild:
    def test_build_command(self, store, runtime, make_app, tmp_path):
        app = make_app(repo_dir=tmp_path)
        runtime.run_docker.return_value = completed()
        tag = store.build(app, build_args={"NODE_ENV": "production"})

        assert tag == "20250321_140509"
        args = runtime.run_docker.call_args[0][0]
        assert args == [
            "build", "--tag", "shop:20250321_140509",
            "--build-arg", "NODE_ENV=production",
            str(tmp_path),
        ]
        assert runtime.run_docker.call_args.kwargs["timeout"] == 1800.0

    def test_build_without_repo_dir(self, store, make_app):
        with pytest.raises(PreconditionError, match="no repo_dir"):
            store.build(make_app())

    @patch("subprocess.run")
    def test_refresh_source(self, mock_run, store, make_app, tmp_path):
        (tmp_path / ".git").mkdir()
        mock_run.return_value = completed()
        store.refresh_source(make_app(repo_dir=tmp_path, repo_branch="release"))
        commands = [c[0][0] for c in mock_run.call_args_list]
        assert commands == [
            ["git", "-C", str(tmp_path), "fetch", "origin", "release"],
            ["git", "-C", str(tmp_path), "reset", "--hard", "origin/release"],
        ]

    @patch("subprocess.run")
    def test_refresh_source_failure(self, mock_run, store, make_app, tmp_path):
        (tmp_path / ".git").mkdir()
        mock_run.return_value = completed(128, stderr="fatal: couldn't find remote ref release")
        with pytest.raises(PreconditionError, match="git fetch failed"):
            store.refresh_source(make_app(repo_dir=tmp_path, repo_branch="release"))

    def test_refresh_source_not_a_checkout(self, store, make_app, tmp_path):
        with pytest.raises(PreconditionError, match="not a git checkout"):
            store.refresh_source(make_app(repo_dir=tmp_path))


class TestMutation:
    def test_promote_retags_latest(self, store, runtime, make_app):
        store.promote(make_app(), "20250215_090000")
        runtime.run_docker.assert_called_with(["tag", "shop:20250215_090000", "shop:latest"])

    def test_exists(self, store, runtime, make_app):
        runtime.run_docker.return_value = completed(1, stderr="No such image")
        assert store.exists(make_app(), "nope") is False

    def test_prune_keeps_current(self, store, runtime, make_app):
        removed_args = []

        def run_docker(args, check=True, timeout=None):
            if args[0] == "rmi":
                removed_args.append(args[1])
                return completed()
            return completed(stdout=IMAGES)

        runtime.run_docker.side_effect = run_docker
        # keep=1: only the newest survives by count, but the current one is never removed
        removed = store.prune(make_app(), keep=1)
        assert removed == ["20250215_090000"]
        assert removed_args == ["shop:20250215_090000"]

    def test_prune_skips_images_in_use(self, store, runtime, make_app):
        def run_docker(args, check=True, timeout=None):
            if args[0] == "rmi":
                raise ContainerRuntimeError("image is being used by running container")
            return completed(stdout=IMAGES)

        runtime.run_docker.side_effect = run_docker
        assert store.prune(make_app(), keep=1) == []

    def test_prune_keep_must_be_positive(self, store, make_app):
        with pytest.raises(ValueError):
            store.prune(make_app(), keep=0)
