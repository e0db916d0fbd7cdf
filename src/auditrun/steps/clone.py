"""CLONE stage: shallow git clone of the protocol repository."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from pathlib import Path
from urllib.parse import urlparse

from auditrun.steps.contracts import CloneParams, CloneResult
from auditrun.steps.process import run_command

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9\-_]")


class InvalidRepositoryUrl(ValueError):
    pass


def sanitize_component(value: str) -> str:
    """Make an id safe to use as a single path component."""
    return _UNSAFE_CHARS.sub("_", value)


def validate_repo_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("https", "git"):
        raise InvalidRepositoryUrl(f"Unsupported URL scheme: {url}")
    if "github.com" not in (parsed.hostname or ""):
        raise InvalidRepositoryUrl(f"Only GitHub repositories are supported: {url}")
    parts = [p for p in parsed.path.split("/") if p]
    if len(parts) < 2:
        raise InvalidRepositoryUrl(f"URL does not name an owner/repository: {url}")


class GitCloneExecutor:
    """Clones into ``<work_dir>/<protocol>/<scan>``, pinning a commit if asked."""

    def __init__(self, work_dir: Path) -> None:
        self._work_dir = Path(work_dir)

    def clone_path(self, protocol_id: str, scan_id: str) -> Path:
        return (
            self._work_dir
            / sanitize_component(protocol_id)
            / sanitize_component(scan_id)
        )

    async def run(self, params: CloneParams) -> CloneResult:
        validate_repo_url(params.repo_url)
        path = self.clone_path(params.protocol_id, params.scan_id)

        if path.exists():
            await asyncio.to_thread(shutil.rmtree, path, True)
        path.parent.mkdir(parents=True, exist_ok=True)

        args = ["git", "clone", "--depth", "1"]
        if params.target_branch:
            args += ["--branch", params.target_branch]
        else:
            args.append("--single-branch")
        args += [params.repo_url, str(path)]

        logger.info("Cloning %s into %s", params.repo_url, path)
        try:
            await run_command(args)
            if params.target_commit:
                await run_command(
                    ["git", "fetch", "--depth=50", "origin", params.target_commit],
                    cwd=path,
                )
                await run_command(["git", "checkout", params.target_commit], cwd=path)
                commit_hash = params.target_commit
                branch = params.target_branch or "detached"
            else:
                head = await run_command(["git", "rev-parse", "HEAD"], cwd=path)
                commit_hash = head.stdout.strip()
                branch = params.target_branch or "main"
        except BaseException:
            await asyncio.to_thread(shutil.rmtree, path, True)
            raise

        logger.info("Cloned %s at %s (%s)", params.repo_url, commit_hash[:12], branch)
        return CloneResult(cloned_path=path, branch=branch, commit_hash=commit_hash)
