"""TaskHub: asynchronous AI task queue with completion notifications."""

from pathlib import Path
from typing import Optional

import structlog

from .common.config import Config

__version__ = "0.1.0"

logger = structlog.get_logger(__name__)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration and resolve its paths.

    Path Resolution:
    - If config_path is provided, load from that file
    - Otherwise use config.yaml in TASKHUB_CONFIG_DIR (or ~/TaskHub), then in
      the working directory, then built-in defaults

    Example:
        >>> config = load_config(Path("config.yaml"))
    """
    from taskhub.common.config import _get_default_config_dir

    if config_path is not None:
        config = Config.from_yaml(config_path)
    else:
        candidates = [_get_default_config_dir() / "config.yaml", Path.cwd() / "config.yaml"]
        found = next((path for path in candidates if path.exists()), None)
        config = Config.from_yaml(found) if found else Config()
        config_path = found

    config.resolve_paths(create_dirs=True)
    logger.debug(
        "config_loaded",
        config_path=str(config_path) if config_path else None,
        config_dir=str(config.config_dir),
    )
    return config


__all__ = ["Config", "__version__", "load_config"]
