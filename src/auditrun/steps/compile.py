"""COMPILE stage: forge build and artifact lookup."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any

from auditrun.steps.contracts import CompileParams, CompileResult
from auditrun.steps.process import CommandError, run_command

logger = logging.getLogger(__name__)

_ERROR_LINE = re.compile(r"Error[:\s]+.*")
_WARNING_LINE = re.compile(r"Warning[:\s]+.*")


def parse_build_output(output: str) -> tuple[list[str], list[str]]:
    """Pull error and warning lines out of compiler output."""
    errors = [m.group(0).strip() for m in _ERROR_LINE.finditer(output)]
    warnings = [m.group(0).strip() for m in _WARNING_LINE.finditer(output)]
    return errors, warnings


def _extract_bytecode(artifact: dict[str, Any]) -> str | None:
    bytecode = artifact.get("bytecode")
    if isinstance(bytecode, dict):
        bytecode = bytecode.get("object")
    return bytecode or None


def load_artifact(
    out_dir: Path, contract_path: str, contract_name: str
) -> dict[str, Any] | None:
    """Find the build artifact for ``contract_name``.

    Looks at ``out/<File>.sol/<Name>.json`` first, then any JSON artifact
    named after the contract.
    """
    expected = out_dir / Path(contract_path).name / f"{contract_name}.json"
    candidates = [expected] if expected.is_file() else []
    if not candidates and out_dir.is_dir():
        candidates = sorted(out_dir.rglob(f"{contract_name}.json"))

    for candidate in candidates:
        try:
            data = json.loads(candidate.read_text())
        except (OSError, json.JSONDecodeError):
            logger.debug("Skipping unreadable artifact %s", candidate)
            continue
        if "abi" in data:
            return data
    return None


class ForgeCompileExecutor:
    """Builds the cloned project with Foundry."""

    async def run(self, params: CompileParams) -> CompileResult:
        root = params.cloned_path
        out_dir = root / "out"

        # Dependencies may already be vendored
        try:
            await run_command(["forge", "install", "--no-git"], cwd=root)
        except CommandError as e:
            logger.debug("forge install skipped: %s", e)

        try:
            build = await run_command(["forge", "build", "--force"], cwd=root)
        except CommandError as e:
            errors, warnings = parse_build_output(e.result.stdout + e.result.stderr)
            return CompileResult(
                success=False,
                artifacts_path=out_dir,
                errors=errors or [str(e)],
                warnings=warnings,
            )

        errors, warnings = parse_build_output(build.stdout + build.stderr)
        artifact = await asyncio.to_thread(
            load_artifact, out_dir, params.contract_path, params.contract_name
        )
        if artifact is None:
            return CompileResult(
                success=False,
                artifacts_path=out_dir,
                errors=errors
                + [f"No build artifact found for {params.contract_name}"],
                warnings=warnings,
            )

        return CompileResult(
            success=True,
            artifacts_path=out_dir,
            abi=artifact.get("abi"),
            bytecode=_extract_bytecode(artifact),
            errors=errors,
            warnings=warnings,
        )
