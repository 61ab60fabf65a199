"""Runtime configuration for report generation.

Values come from environment variables with module-level defaults, so the
web service, the CLI and worker processes all resolve the same settings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from report_errors import ConfigError

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
DEFAULT_DB_PATH = Path(__file__).parent / "chat_history.db"
DEFAULT_BATCH_SIZE = 1000
DEFAULT_PROGRESS_INTERVAL = 0.2  # seconds between throttled progress updates
CACHE_TTL_SECONDS = 3600  # 1 hour

ENV_DB_PATH = "CHAT_REPORT_DB_PATH"
ENV_ACCOUNT = "CHAT_REPORT_ACCOUNT"
ENV_BATCH_SIZE = "CHAT_REPORT_BATCH_SIZE"
ENV_PROGRESS_INTERVAL = "CHAT_REPORT_PROGRESS_INTERVAL"


@dataclass(frozen=True)
class ReportConfig:
    """Resolved settings for one report run."""

    db_path: Path
    account_id: str
    batch_size: int = DEFAULT_BATCH_SIZE
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL
    cache_ttl_seconds: int = CACHE_TTL_SECONDS

    def validate(self) -> "ReportConfig":
        """Raise ConfigError when the settings cannot open a store."""
        if not self.account_id or not self.account_id.strip():
            raise ConfigError(f"No account id configured (set {ENV_ACCOUNT}).")
        if not str(self.db_path).strip():
            raise ConfigError(f"No database path configured (set {ENV_DB_PATH}).")
        if self.batch_size <= 0:
            raise ConfigError(f"Batch size must be positive, got {self.batch_size}.")
        if self.progress_interval < 0:
            raise ConfigError(
                f"Progress interval must not be negative, got {self.progress_interval}."
            )
        return self


def _env_number(name: str, default: float, cast: type) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}.") from e


def load_config(
    db_path: str | Path | None = None,
    account_id: str | None = None,
) -> ReportConfig:
    """Build a validated ReportConfig.

    Explicit arguments win over environment variables, which win over the
    module defaults.

    Raises:
        ConfigError: If the account id is missing or a numeric setting is
            not a number.
    """
    resolved_path = db_path or os.environ.get(ENV_DB_PATH) or DEFAULT_DB_PATH
    resolved_account = account_id or os.environ.get(ENV_ACCOUNT, "")
    config = ReportConfig(
        db_path=Path(resolved_path),
        account_id=resolved_account.strip(),
        batch_size=int(_env_number(ENV_BATCH_SIZE, DEFAULT_BATCH_SIZE, int)),
        progress_interval=float(
            _env_number(ENV_PROGRESS_INTERVAL, DEFAULT_PROGRESS_INTERVAL, float)
        ),
    )
    return config.validate()
