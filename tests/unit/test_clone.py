"""Tests for the git clone stage."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from auditrun.steps.clone import (
    GitCloneExecutor,
    InvalidRepositoryUrl,
    sanitize_component,
    validate_repo_url,
)
from auditrun.steps.contracts import CloneParams
from auditrun.steps.process import CommandError, CommandResult


def run_async(coro):
    """Helper to run async functions in sync tests."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


def _ok(stdout: str = "") -> CommandResult:
    return CommandResult(returncode=0, stdout=stdout, stderr="")


class TestValidation:
    def test_accepts_github_urls(self):
        validate_repo_url("https://github.com/owner/repo")
        validate_repo_url("https://github.com/owner/repo.git")
        validate_repo_url("git://github.com/owner/repo")

    @pytest.mark.parametrize(
        "url",
        [
            "http://github.com/owner/repo",
            "https://gitlab.com/owner/repo",
            "https://github.com/owner",
            "file:///etc/passwd",
            "not a url",
        ],
    )
    def test_rejects(self, url):
        with pytest.raises(InvalidRepositoryUrl):
            validate_repo_url(url)

    def test_sanitize_component(self):
        assert sanitize_component("abc-123_x") == "abc-123_x"
        assert sanitize_component("../../etc") == "______etc"
        assert sanitize_component("a b/c") == "a_b_c"


class TestGitCloneExecutor:
    def test_clone_default_branch(self, tmp_path: Path):
        executor = GitCloneExecutor(tmp_path)
        mock = AsyncMock(side_effect=[_ok(), _ok("deadbeefcafe\n")])
        params = CloneParams(
            scan_id="s1", protocol_id="p1", repo_url="https://github.com/o/r"
        )
        with patch("auditrun.steps.clone.run_command", mock):
            result = run_async(executor.run(params))

        assert result.cloned_path == tmp_path / "p1" / "s1"
        assert result.branch == "main"
        assert result.commit_hash == "deadbeefcafe"
        clone_args = mock.call_args_list[0].args[0]
        assert clone_args[:4] == ["git", "clone", "--depth", "1"]
        assert "--single-branch" in clone_args

    def test_clone_pinned_commit(self, tmp_path: Path):
        executor = GitCloneExecutor(tmp_path)
        mock = AsyncMock(side_effect=[_ok(), _ok(), _ok()])
        params = CloneParams(
            scan_id="s1",
            protocol_id="p1",
            repo_url="https://github.com/o/r",
            target_branch="release",
            target_commit="abc123",
        )
        with patch("auditrun.steps.clone.run_command", mock):
            result = run_async(executor.run(params))

        assert result.branch == "release"
        assert result.commit_hash == "abc123"
        calls = [c.args[0] for c in mock.call_args_list]
        assert ["--branch", "release"] == calls[0][4:6]
        assert calls[1] == ["git", "fetch", "--depth=50", "origin", "abc123"]
        assert calls[2] == ["git", "checkout", "abc123"]

    def test_failed_clone_removes_directory(self, tmp_path: Path):
        executor = GitCloneExecutor(tmp_path)
        target = executor.clone_path("p1", "s1")

        async def fake_clone(args, **kwargs):
            target.mkdir(parents=True)
            raise CommandError(args, CommandResult(128, "", "fatal: repository not found"))

        params = CloneParams(
            scan_id="s1", protocol_id="p1", repo_url="https://github.com/o/r"
        )
        with patch("auditrun.steps.clone.run_command", side_effect=fake_clone):
            with pytest.raises(CommandError, match="repository not found"):
                run_async(executor.run(params))
        assert not target.exists()

    def test_invalid_url_never_runs_git(self, tmp_path: Path):
        mock = AsyncMock()
        params = CloneParams(scan_id="s1", protocol_id="p1", repo_url="https://evil.example/x/y")
        with patch("auditrun.steps.clone.run_command", mock):
            with pytest.raises(InvalidRepositoryUrl):
                run_async(GitCloneExecutor(tmp_path).run(params))
        mock.assert_not_called()
