"""
Logging for Gavel.

Everything logs under "gavel.<subsystem>" (market, ledger, rules,
settlement, outbox.relay, storage...). Output goes to a colored console
handler and optionally to a plain log file. Handlers pass every record;
levels live on the loggers, so one subsystem can be turned up or down on
its own:

    GAVEL_LOG_LEVEL=WARNING
    GAVEL_LOG_LEVELS=outbox.relay=DEBUG,rules=ERROR
"""

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Mapping, Optional, Union

import colorlog

if TYPE_CHECKING:
    from gavel.core.config import EngineConfig

ROOT_LOGGER = "gavel"
LOG_FILE = "gavel.log"

CONSOLE_FORMAT = "%(log_color)s%(asctime)s [%(name)s] %(levelname)-8s%(reset)s %(message)s"
FILE_FORMAT = "%(asctime)s [%(name)s] %(levelname)-8s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

Level = Union[int, str]


def parse_level(value: Level) -> int:
    """Level name or number to a logging level. Raises ValueError if unknown."""
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {value!r}")
    return level


def parse_level_overrides(spec: Optional[str]) -> Dict[str, int]:
    """
    Parse "subsystem=LEVEL,subsystem=LEVEL" into a level per subsystem.

    Subsystem names may carry the "gavel." prefix or not. Blank entries are
    ignored.

    Raises:
        ValueError: malformed entry or unknown level
    """
    overrides: Dict[str, int] = {}
    if not spec:
        return overrides
    for entry in spec.split(","):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, level = entry.partition("=")
        name = name.strip()
        if name.startswith(ROOT_LOGGER + "."):
            name = name[len(ROOT_LOGGER) + 1:]
        if not sep or not name:
            raise ValueError(f"Expected subsystem=LEVEL, got {entry!r}")
        overrides[name] = parse_level(level)
    return overrides


class GavelLogger:
    """Owns the handlers of the "gavel" logger and the per-subsystem levels"""

    _initialized = False
    _log_dir: Optional[Path] = None
    _overrides: Dict[str, int] = {}

    @classmethod
    def setup(
        cls,
        level: Level = logging.INFO,
        log_dir: Optional[str] = None,
        log_to_file: bool = False,
        subsystem_levels: Optional[Mapping[str, Level]] = None,
        force: bool = False,
    ):
        """
        Setup logging configuration.

        Args:
            level: Default level for every subsystem
            log_dir: Directory for gavel.log. If None, uses ./logs
            log_to_file: Whether to also write gavel.log
            subsystem_levels: Level per subsystem, e.g. {"outbox.relay": "DEBUG"}
            force: Replace an earlier configuration
        """
        if cls._initialized and not force:
            return

        root_logger = logging.getLogger(ROOT_LOGGER)
        root_logger.setLevel(parse_level(level))
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        console_handler = colorlog.StreamHandler(sys.stderr)
        console_handler.setFormatter(
            colorlog.ColoredFormatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT, log_colors=LOG_COLORS)
        )
        root_logger.addHandler(console_handler)

        cls._log_dir = None
        if log_to_file:
            cls._log_dir = Path(log_dir) if log_dir else Path("logs")
            cls._log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(cls._log_dir / LOG_FILE)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
            root_logger.addHandler(file_handler)

        cls.set_levels(subsystem_levels or {})
        cls._initialized = True

    @classmethod
    def set_levels(cls, levels: Mapping[str, Level]) -> None:
        """Replace the per-subsystem levels; dropped subsystems inherit again."""
        parsed = {name: parse_level(level) for name, level in levels.items()}
        for name in cls._overrides:
            cls.get_logger(name).setLevel(logging.NOTSET)
        for name, level in parsed.items():
            cls.get_logger(name).setLevel(level)
        cls._overrides = parsed

    @classmethod
    def levels(cls) -> Dict[str, int]:
        return dict(cls._overrides)

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """
        Get a logger for a specific subsystem.

        Args:
            name: Subsystem name (e.g., 'ledger', 'rules', 'outbox.relay')

        Returns:
            Logger instance
        """
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a specific subsystem"""
    return GavelLogger.get_logger(name)


def setup_from_config(config: "EngineConfig", force: bool = False):
    """
    Configure logging from `log_level`, `log_levels` and `log_dir`.

    Raises:
        ValueError: unknown level or malformed `log_levels`
    """
    level = parse_level(config.log_level)
    overrides = parse_level_overrides(config.log_levels)
    GavelLogger.setup(
        level=level,
        log_dir=str(config.log_dir) if config.log_dir else None,
        log_to_file=config.log_dir is not None,
        subsystem_levels=overrides,
        force=force,
    )
