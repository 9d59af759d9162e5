"""Runtime configuration: env-driven, with ``.env`` support.

Reads from a ``.env`` file and ``BUILDTRAIL_*`` environment variables.
"""

from __future__ import annotations

import getpass
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from buildtrail.models.rebuild import RebuildPolicy


def _default_actor() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


class Settings(BaseSettings):
    """Buildtrail settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export BUILDTRAIL_LOG_LEVEL=DEBUG
        export BUILDTRAIL_GITLAB_URL=https://gitlab.example.com/
        export BUILDTRAIL_GITLAB_TOKEN=glpat-...

    Or via .env file::

        BUILDTRAIL_HOME=/srv/tools/.buildtrail
        BUILDTRAIL_REBUILD_BUDGET_SECONDS=600
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="BUILDTRAIL_",
        env_file_encoding="utf-8",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"

    # Storage paths
    home: Path = Path(".buildtrail")
    tracking_file: Path = Path(".buildtrail/artifacts.toml")
    action_log_path: Path = Path(".buildtrail/actions.db")

    # Recorded in every action log entry
    actor: str = Field(default_factory=_default_actor)

    # Concurrency and network
    scan_workers: int = Field(default=8, ge=1)
    http_timeout: float = Field(default=30.0, gt=0)

    # GitLab defaults (per-source token_env takes precedence over the token)
    gitlab_url: str = "https://gitlab.com/"
    gitlab_token: str = ""
    max_history_pages: int = Field(default=5, ge=1)

    # Rebuild polling
    rebuild_initial_delay: float = Field(default=5.0, gt=0)
    rebuild_max_delay: float = Field(default=60.0, gt=0)
    rebuild_multiplier: float = Field(default=2.0, ge=1.0)
    rebuild_budget_seconds: float = Field(default=1800.0, gt=0)
    rebuild_max_polls: int | None = None

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def rebuild_policy(self) -> RebuildPolicy:
        """The ``RebuildPolicy`` described by these settings."""
        return RebuildPolicy(
            initial_delay=self.rebuild_initial_delay,
            multiplier=self.rebuild_multiplier,
            max_delay=self.rebuild_max_delay,
            budget_seconds=self.rebuild_budget_seconds,
            max_polls=self.rebuild_max_polls,
        )


# Module-level singleton: import as `from buildtrail.config import settings`
settings = Settings()
