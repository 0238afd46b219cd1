"""Configuration loading from environment variables and ambient.toml."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

_AMBIENT_HOME = Path.home() / ".ambient"
_DEFAULT_MEMORY_DIR = _AMBIENT_HOME / "memory"
_CONFIG_FILENAME = "ambient.toml"


@dataclass
class MemoryConfig:
    """Store caps, expiry and compaction tuning."""

    max_project_events: int = 200
    max_task_events: int = 500
    ttl_days: float = 90
    archive_ttl_days: float = 7
    supersede_threshold: float = 0.4
    project_compact_threshold: int = 150
    task_compact_threshold: int = 400
    project_compact_batch: int = 120
    task_compact_batch: int = 300
    branch_cache_ttl: float = 5.0


@dataclass
class DaemonConfig:
    """Socket, PID file, sessions and scheduling."""

    socket_path: Path = _AMBIENT_HOME / "daemon.sock"
    pid_file: Path = _AMBIENT_HOME / "daemon.pid"
    default_agent: str = "claude"
    idle_timeout: int = 24 * 60 * 60
    check_interval: int = 60
    sweep_hour: int = 3
    activity_flush_threshold: int = 30
    activity_buffer_max: int = 50
    passive_monitoring: bool = True
    context_file: bool = True


@dataclass
class SummarizerConfig:
    """Fast model used for compaction and extraction."""

    enabled: bool = True
    model: str = "claude-haiku-4-5"
    timeout: float = 30.0


@dataclass
class AmbientConfig:
    """Top-level configuration."""

    memory: MemoryConfig = field(default_factory=MemoryConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    summarizer: SummarizerConfig = field(default_factory=SummarizerConfig)
    memory_dir: Path = _DEFAULT_MEMORY_DIR
    log_level: str = "INFO"


def _bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def load_config(config_path: Path | None = None) -> AmbientConfig:
    """Load configuration from environment variables and optional ambient.toml.

    Priority: environment variables > ambient.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.ambient/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _AMBIENT_HOME / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    memory_data = file_data.get("memory", {})
    daemon_data = file_data.get("daemon", {})
    summarizer_data = file_data.get("summarizer", {})
    mem = MemoryConfig()
    dmn = DaemonConfig()
    summ = SummarizerConfig()

    config = AmbientConfig(
        memory=MemoryConfig(
            max_project_events=int(
                memory_data.get("max_project_events", mem.max_project_events)
            ),
            max_task_events=int(memory_data.get("max_task_events", mem.max_task_events)),
            ttl_days=float(os.getenv("AMBIENT_TTL_DAYS", memory_data.get("ttl_days", mem.ttl_days))),
            archive_ttl_days=float(memory_data.get("archive_ttl_days", mem.archive_ttl_days)),
            supersede_threshold=float(
                os.getenv(
                    "AMBIENT_SUPERSEDE_THRESHOLD",
                    memory_data.get("supersede_threshold", mem.supersede_threshold),
                )
            ),
            project_compact_threshold=int(
                memory_data.get("project_compact_threshold", mem.project_compact_threshold)
            ),
            task_compact_threshold=int(
                memory_data.get("task_compact_threshold", mem.task_compact_threshold)
            ),
            project_compact_batch=int(
                memory_data.get("project_compact_batch", mem.project_compact_batch)
            ),
            task_compact_batch=int(memory_data.get("task_compact_batch", mem.task_compact_batch)),
            branch_cache_ttl=float(memory_data.get("branch_cache_ttl", mem.branch_cache_ttl)),
        ),
        daemon=DaemonConfig(
            socket_path=Path(
                os.getenv("AMBIENT_SOCKET", daemon_data.get("socket_path", str(dmn.socket_path)))
            ).expanduser(),
            pid_file=Path(
                os.getenv("AMBIENT_PID_FILE", daemon_data.get("pid_file", str(dmn.pid_file)))
            ).expanduser(),
            default_agent=os.getenv(
                "AMBIENT_DEFAULT_AGENT", daemon_data.get("default_agent", dmn.default_agent)
            ),
            idle_timeout=int(
                os.getenv("AMBIENT_IDLE_TIMEOUT", daemon_data.get("idle_timeout", dmn.idle_timeout))
            ),
            check_interval=int(daemon_data.get("check_interval", dmn.check_interval)),
            sweep_hour=int(daemon_data.get("sweep_hour", dmn.sweep_hour)),
            activity_flush_threshold=int(
                daemon_data.get("activity_flush_threshold", dmn.activity_flush_threshold)
            ),
            activity_buffer_max=int(
                daemon_data.get("activity_buffer_max", dmn.activity_buffer_max)
            ),
            passive_monitoring=_bool(
                os.getenv(
                    "AMBIENT_PASSIVE_MONITORING",
                    daemon_data.get("passive_monitoring", dmn.passive_monitoring),
                )
            ),
            context_file=_bool(daemon_data.get("context_file", dmn.context_file)),
        ),
        summarizer=SummarizerConfig(
            enabled=_bool(
                os.getenv("AMBIENT_SUMMARIZER", summarizer_data.get("enabled", summ.enabled))
            ),
            model=os.getenv("AMBIENT_MODEL", summarizer_data.get("model", summ.model)),
            timeout=float(summarizer_data.get("timeout", summ.timeout)),
        ),
        memory_dir=Path(
            os.getenv("AMBIENT_MEMORY_DIR", file_data.get("memory_dir", str(_DEFAULT_MEMORY_DIR)))
        ).expanduser(),
        log_level=os.getenv("AMBIENT_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
