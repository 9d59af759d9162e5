"""Tracking file I/O for ``.buildtrail/artifacts.toml``."""

from __future__ import annotations

import logging
from pathlib import Path

import tomli
import tomli_w
from pydantic import ValidationError

from buildtrail.core.errors import ConfigurationError
from buildtrail.models.artifacts import ProviderKind
from buildtrail.models.config import SourceConfig, TrackingConfig

logger = logging.getLogger(__name__)

TRACKING_FILENAME = "artifacts.toml"
DEFAULT_SOURCE_ID = "gitlab"
DEFAULT_TOKEN_ENV = "BUILDTRAIL_GITLAB_TOKEN"


def load_tracking_config(path: Path) -> TrackingConfig:
    """Load the tracking file at ``path``.

    Raises
    ------
    ConfigurationError
        If the file is missing, is not valid TOML, or has an invalid shape.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(
            f"No tracking file at {path}; run `buildtrail init` first"
        )
    try:
        with open(path, "rb") as f:
            data = tomli.load(f)
    except tomli.TOMLDecodeError as exc:
        raise ConfigurationError(f"{path} is not valid TOML: {exc}") from exc
    try:
        config = TrackingConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"{path} is malformed: {exc}") from exc

    names = [a.name for a in config.artifacts]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigurationError(f"{path} tracks {', '.join(duplicates)} more than once")
    logger.debug("Loaded %d artifacts from %s", len(config.artifacts), path)
    return config


def save_tracking_config(path: Path, config: TrackingConfig) -> None:
    """Write ``config`` to ``path``, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json", exclude_none=True)
    with open(path, "wb") as f:
        tomli_w.dump(data, f)
    logger.debug("Saved %d artifacts to %s", len(config.artifacts), path)


def init_tracking(
    home: Path,
    url: str,
    *,
    tracking_file: Path | None = None,
    token_env: str | None = DEFAULT_TOKEN_ENV,
) -> Path:
    """Create ``home`` and a tracking file with a single GitLab source.

    Returns the path of the new tracking file.

    Raises
    ------
    ConfigurationError
        If the tracking file already exists.
    """
    home = Path(home)
    path = Path(tracking_file) if tracking_file is not None else home / TRACKING_FILENAME
    if path.exists():
        raise ConfigurationError(f"{path} already exists; refusing to overwrite it")
    home.mkdir(parents=True, exist_ok=True)
    config = TrackingConfig(
        sources=[
            SourceConfig(
                id=DEFAULT_SOURCE_ID,
                kind=ProviderKind.GITLAB,
                url=url,
                token_env=token_env,
            )
        ]
    )
    save_tracking_config(path, config)
    logger.info("Initialized %s with source %s (%s)", path, DEFAULT_SOURCE_ID, url)
    return path
