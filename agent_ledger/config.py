"""
Runtime configuration for agent-ledger.

Values come from ``AGENT_LEDGER_*`` environment variables and fall back to
XDG locations. The resulting ``LedgerConfig`` is handed to the coordinator
explicitly so several stores can be driven from one process.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional
import os
import tempfile


APP_NAME = "agent-ledger"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    if not value:
        return default
    return Path(value).expanduser()


def data_dir() -> Path:
    """$XDG_DATA_HOME/agent-ledger (~/.local/share/agent-ledger)."""
    base = os.getenv("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(base) / APP_NAME


def runtime_dir() -> Path:
    """Directory for process lock files."""
    base = os.getenv("XDG_RUNTIME_DIR") or tempfile.gettempdir()
    return Path(base) / APP_NAME


@dataclass
class LedgerConfig:
    """Everything the coordinator consumes from its environment."""
    db_path: Path = field(default_factory=lambda: data_dir() / "ledger.db")
    claude_root: Path = field(default_factory=lambda: Path.home() / ".claude")
    codex_root: Path = field(default_factory=lambda: Path.home() / ".codex")
    enable_claude: bool = True
    enable_codex: bool = True
    enable_plans: bool = True
    poll_interval_seconds: float = 1.0
    lock_dir: Path = field(default_factory=runtime_dir)

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        defaults = cls()
        return cls(
            db_path=_env_path("AGENT_LEDGER_DB_PATH", defaults.db_path),
            claude_root=_env_path("AGENT_LEDGER_CLAUDE_ROOT", defaults.claude_root),
            codex_root=_env_path("AGENT_LEDGER_CODEX_ROOT", defaults.codex_root),
            enable_claude=_env_bool("AGENT_LEDGER_ENABLE_CLAUDE", True),
            enable_codex=_env_bool("AGENT_LEDGER_ENABLE_CODEX", True),
            enable_plans=_env_bool("AGENT_LEDGER_ENABLE_PLANS", True),
            poll_interval_seconds=_env_float(
                "AGENT_LEDGER_POLL_SECONDS", defaults.poll_interval_seconds
            ),
            lock_dir=_env_path("AGENT_LEDGER_LOCK_DIR", defaults.lock_dir),
        )

    def with_overrides(
        self,
        db_path: Optional[Path] = None,
        claude_root: Optional[Path] = None,
        codex_root: Optional[Path] = None,
        poll_interval_seconds: Optional[float] = None,
    ) -> "LedgerConfig":
        """Return a copy with any non-None CLI overrides applied."""
        changes = {
            "db_path": db_path,
            "claude_root": claude_root,
            "codex_root": codex_root,
            "poll_interval_seconds": poll_interval_seconds,
        }
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @property
    def store_path(self) -> Path:
        """Resolved store path; identifies the store for process locking."""
        return Path(self.db_path).expanduser().resolve()
