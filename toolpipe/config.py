# toolpipe/config.py
# Runtime settings for the tool pipeline engine

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionConfig:
    # Per-invocation wall-clock deadline in seconds (0 disables)
    tool_timeout_seconds: float = 60.0
    # Upper bound on tool processes running at once for one dispatcher
    max_concurrent_tools: int = 4
    temp_prefix: str = "toolpipe-"
    read_chunk_size: int = 65536


@dataclass(frozen=True)
class StorageConfig:
    base_dir: Path = field(default_factory=lambda: Path.home() / ".toolpipe")
    settings_dir: str = "settings"
    settings_key: str = "config"
    # YAML file loaded instead of the stored blob when set
    config_file: Optional[Path] = None

    @property
    def settings_path(self) -> Path:
        return self.base_dir / self.settings_dir


@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file_enabled: bool = False
    file_name: str = "toolpipe.log"
    max_file_size_mb: int = 10
    backup_count: int = 5


@dataclass(frozen=True)
class ToolpipeConfig:
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log: LogConfig = field(default_factory=LogConfig)
    debug: bool = False

    @classmethod
    def from_env(cls) -> "ToolpipeConfig":
        execution = ExecutionConfig(
            tool_timeout_seconds=_env_float("TOOLPIPE_TOOL_TIMEOUT", 60.0),
            max_concurrent_tools=max(1, _env_int("TOOLPIPE_MAX_CONCURRENT_TOOLS", 4)),
            temp_prefix=os.getenv("TOOLPIPE_TEMP_PREFIX", "toolpipe-"),
        )

        base_dir = Path(os.getenv("TOOLPIPE_DATA_DIR", str(Path.home() / ".toolpipe")))
        storage = StorageConfig(
            base_dir=base_dir,
            settings_key=os.getenv("TOOLPIPE_SETTINGS_KEY", "config"),
            config_file=Path(os.environ["TOOLPIPE_CONFIG"]) if os.getenv("TOOLPIPE_CONFIG") else None,
        )

        log = LogConfig(
            level=os.getenv("TOOLPIPE_LOG_LEVEL", "INFO"),
            file_enabled=os.getenv("TOOLPIPE_LOG_FILE", "false").lower() == "true",
        )

        return cls(
            execution=execution,
            storage=storage,
            log=log,
            debug=os.getenv("TOOLPIPE_DEBUG", "false").lower() == "true",
        )


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    if not val:
        return default
    try:
        return int(val)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={val!r}")
        return default


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    if not val:
        return default
    try:
        return float(val)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={val!r}")
        return default


_config: Optional[ToolpipeConfig] = None


def get_config() -> ToolpipeConfig:
    global _config
    if _config is None:
        _config = ToolpipeConfig.from_env()
    return _config


def set_config(config: Optional[ToolpipeConfig]) -> None:
    global _config
    _config = config


def setup_logging(config: Optional[ToolpipeConfig] = None) -> None:
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_enabled:
        from logging.handlers import RotatingFileHandler
        cfg.storage.base_dir.mkdir(parents=True, exist_ok=True)
        log_path = cfg.storage.base_dir / cfg.log.file_name
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    level = "DEBUG" if cfg.debug else cfg.log.level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
