"""Global configuration: XDG paths, YAML file, env vars, defaults."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

import yaml

from auditrun.pipeline.models import ScanStep

_MINUTE = 60.0

DEFAULT_STEP_TIMEOUTS: dict[ScanStep, float] = {
    ScanStep.CLONE: 5 * _MINUTE,
    ScanStep.COMPILE: 10 * _MINUTE,
    ScanStep.DEPLOY: 3 * _MINUTE,
    ScanStep.ANALYZE: 15 * _MINUTE,
    ScanStep.AI_DEEP_ANALYSIS: 10 * _MINUTE,
    ScanStep.PROOF_GENERATION: 5 * _MINUTE,
    ScanStep.SUBMIT: 2 * _MINUTE,
}


def _default_data_dir() -> Path:
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "auditrun"
    return Path.home() / ".local" / "share" / "auditrun"


def _default_config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "auditrun"
    return Path.home() / ".config" / "auditrun"


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() not in ("false", "0", "no", "off")


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable settings handed to the orchestrator for one run."""

    step_timeouts: Mapping[ScanStep, float] = field(
        default_factory=lambda: MappingProxyType(dict(DEFAULT_STEP_TIMEOUTS))
    )
    ai_enabled: bool = True
    ai_required: bool = True
    cleanup_grace_period: float = 5.0

    def timeout_for(self, step: ScanStep) -> float:
        return self.step_timeouts.get(step, DEFAULT_STEP_TIMEOUTS[step])


@dataclass
class AuditRunConfig:
    """Application-wide configuration."""

    data_dir: Path = field(default_factory=_default_data_dir)
    config_dir: Path = field(default_factory=_default_config_dir)
    work_dir: Path = field(default_factory=lambda: Path("/tmp/auditrun-repos"))
    concurrency: int = 2
    queue_poll_interval: float = 1.0
    queue_attempts: int = 3
    queue_backoff: float = 5.0
    capacity_wait: float = 5 * _MINUTE
    capacity_poll: float = 15.0
    chain_port_start: int = 8545
    chain_port_end: int = 8645
    ai_enabled: bool = True
    ai_required: bool = True
    cleanup_grace_period: float = 5.0
    step_timeouts: dict[ScanStep, float] = field(
        default_factory=lambda: dict(DEFAULT_STEP_TIMEOUTS)
    )
    verbose: bool = False

    @property
    def db_path(self) -> Path:
        return self.data_dir / "auditrun.db"

    @property
    def pipeline(self) -> PipelineConfig:
        """Freeze the pipeline-relevant settings for the orchestrator."""
        return PipelineConfig(
            step_timeouts=MappingProxyType(dict(self.step_timeouts)),
            ai_enabled=self.ai_enabled,
            ai_required=self.ai_required,
            cleanup_grace_period=self.cleanup_grace_period,
        )

    @classmethod
    def load(cls, path: str | Path | None = None) -> AuditRunConfig:
        """Load config from an optional YAML file, then environment variables."""
        config = cls()

        config_file = Path(path) if path else config.config_dir / "config.yaml"
        if config_file.is_file():
            config._apply_file(config_file)

        env_dir = os.environ.get("AUDITRUN_DATA_DIR")
        if env_dir:
            config.data_dir = Path(env_dir)

        env_work = os.environ.get("AUDITRUN_WORK_DIR")
        if env_work:
            config.work_dir = Path(env_work)

        env_concurrency = os.environ.get("AUDITRUN_CONCURRENCY")
        if env_concurrency:
            config.concurrency = int(env_concurrency)

        env_wait = os.environ.get("AUDITRUN_CAPACITY_WAIT")
        if env_wait:
            config.capacity_wait = float(env_wait)

        config.ai_enabled = _env_flag("AI_ANALYSIS_ENABLED", config.ai_enabled)
        config.ai_required = _env_flag("AI_ANALYSIS_REQUIRED", config.ai_required)

        return config

    def _apply_file(self, path: Path) -> None:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must be a mapping")

        for key in ("data_dir", "config_dir", "work_dir"):
            if key in data:
                setattr(self, key, Path(data[key]))

        for key in (
            "concurrency",
            "queue_attempts",
            "chain_port_start",
            "chain_port_end",
        ):
            if key in data:
                setattr(self, key, int(data[key]))

        for key in (
            "queue_poll_interval",
            "queue_backoff",
            "capacity_wait",
            "capacity_poll",
            "cleanup_grace_period",
        ):
            if key in data:
                setattr(self, key, float(data[key]))

        ai = data.get("ai", {})
        if isinstance(ai, dict):
            self.ai_enabled = bool(ai.get("enabled", self.ai_enabled))
            self.ai_required = bool(ai.get("required", self.ai_required))

        timeouts = data.get("step_timeouts", {})
        if isinstance(timeouts, dict):
            for name, seconds in timeouts.items():
                self.step_timeouts[ScanStep(str(name).upper())] = float(seconds)
