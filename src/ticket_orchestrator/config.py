"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

LOCK_MODES = ("file", "repository", "none")

DEFAULT_ARCHITECTURE_KEYWORDS = (
    "architecture change",
    "new service",
    "rearchitect",
    "system design",
)
DEFAULT_SECURITY_KEYWORDS = ("credential", "secret", "encryption", "permission model")
DEFAULT_SECURITY_PATHS = ("*.pem", "*.key", ".env*", "*/secrets/*", "*/security/*")
DEFAULT_DATA_PATHS = ("*/migrations/*", "*.sql", "*/schema/*")
DEFAULT_BREAKING_CHANGE_KEYWORDS = ("breaking change", "breaking-change", "deprecate public")
DEFAULT_AMBIGUITY_KEYWORDS = ("tbd", "unclear", "ambiguous", "needs decision")


def _split_list(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".ticket_orchestrator" / "tix.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    worker_count: int = 2
    max_attempts: int = 3
    lock_timeout: float = 1800.0
    slot_timeout: float = 900.0
    backoff_base: float = 1.0
    backoff_cap: float = 60.0
    strict_gate_threshold: float = 80.0
    lock_mode: str = "file"
    poll_interval: float = 5.0
    agent_command: str | None = None
    gate_command: str | None = None
    command_timeout: float = 600.0
    log_dir: Path | None = None
    audit_log: Path | None = None
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    architecture_keywords: tuple[str, ...] = DEFAULT_ARCHITECTURE_KEYWORDS
    security_keywords: tuple[str, ...] = DEFAULT_SECURITY_KEYWORDS
    security_paths: tuple[str, ...] = DEFAULT_SECURITY_PATHS
    data_paths: tuple[str, ...] = DEFAULT_DATA_PATHS
    breaking_change_keywords: tuple[str, ...] = DEFAULT_BREAKING_CHANGE_KEYWORDS
    ambiguity_keywords: tuple[str, ...] = DEFAULT_AMBIGUITY_KEYWORDS

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("TIX_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("TIX_REPO_PATH"):
            config.repo_path = Path(repo)

        if workers := os.environ.get("TIX_WORKERS"):
            config.worker_count = int(workers)

        if attempts := os.environ.get("TIX_MAX_ATTEMPTS"):
            config.max_attempts = int(attempts)

        if lock_timeout := os.environ.get("TIX_LOCK_TIMEOUT"):
            config.lock_timeout = float(lock_timeout)

        if slot_timeout := os.environ.get("TIX_SLOT_TIMEOUT"):
            config.slot_timeout = float(slot_timeout)

        if base := os.environ.get("TIX_BACKOFF_BASE"):
            config.backoff_base = float(base)

        if cap := os.environ.get("TIX_BACKOFF_CAP"):
            config.backoff_cap = float(cap)

        if threshold := os.environ.get("TIX_STRICT_GATE_THRESHOLD"):
            config.strict_gate_threshold = float(threshold)

        if lock_mode := os.environ.get("TIX_LOCK_MODE"):
            config.lock_mode = lock_mode

        if interval := os.environ.get("TIX_POLL_INTERVAL"):
            config.poll_interval = float(interval)

        config.agent_command = os.environ.get("TIX_AGENT_COMMAND")
        config.gate_command = os.environ.get("TIX_GATE_COMMAND")

        if cmd_timeout := os.environ.get("TIX_COMMAND_TIMEOUT"):
            config.command_timeout = float(cmd_timeout)

        if log_dir := os.environ.get("TIX_LOG_DIR"):
            config.log_dir = Path(log_dir)

        if audit_log := os.environ.get("TIX_AUDIT_LOG"):
            config.audit_log = Path(audit_log)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("TIX_SLACK_CHANNEL")

        if paths := os.environ.get("TIX_SECURITY_PATHS"):
            config.security_paths = _split_list(paths)

        if paths := os.environ.get("TIX_DATA_PATHS"):
            config.data_paths = _split_list(paths)

        config.validate()
        return config

    def validate(self) -> None:
        """Reject values the scheduler cannot run with."""
        if self.worker_count < 1:
            raise ValueError(f"worker_count must be at least 1, got {self.worker_count}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.lock_timeout <= 0:
            raise ValueError("lock_timeout must be positive")
        if self.slot_timeout <= 0:
            raise ValueError("slot_timeout must be positive")
        if self.command_timeout <= 0:
            raise ValueError("command_timeout must be positive")
        # A command may not outlive the slot or the locks it runs under.
        if self.slot_timeout <= self.command_timeout or self.lock_timeout <= self.command_timeout:
            raise ValueError(
                f"slot_timeout ({self.slot_timeout:g}s) and lock_timeout ({self.lock_timeout:g}s) "
                f"must exceed command_timeout ({self.command_timeout:g}s)"
            )
        if self.backoff_base < 0 or self.backoff_cap < 0:
            raise ValueError("backoff_base and backoff_cap must not be negative")
        if self.lock_mode not in LOCK_MODES:
            raise ValueError(
                f"lock_mode must be one of {', '.join(LOCK_MODES)}, got '{self.lock_mode}'"
            )


def get_config() -> Config:
    return Config.from_env()
