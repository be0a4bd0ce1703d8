"""
Per-component file logging for the market filters client.

Every component (codec, registry, driver, orchestrator, transport, main)
writes to its own file under logs/<Module_Folder>/. Records can carry
filter context through `extra=` (label, filter_id, block_number,
transport_mode, error); the JSON formatter emits those keys when present.

Usage:
    from app_logging.logger_manager import setup_module_logger, create_module_log_directories

    create_module_log_directories()
    logger = setup_module_logger("event_codec", "event_codec.log", module_folder="Event_Codec_Logs")
    logger.info("Decoded %s", label, extra={"label": label})
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from config.loader import get_config

_PROJECT_ROOT = Path(__file__).parent.parent

_logging_cfg = get_config().get_app_config().get("logging", {})
_LOG_DIR = str(_PROJECT_ROOT / _logging_cfg.get("log_dir", "logs"))
_MODULE_FOLDERS: dict[str, str] = _logging_cfg.get("module_folders", {})

# Filter context keys copied from LogRecord extras into JSON output
_CONTEXT_FIELDS = ("label", "filter_id", "block_number", "transport_mode", "error")


# ============================================================================
# FORMATTERS
# ============================================================================


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with any filter context attached to the record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(
            {key: getattr(record, key) for key in _CONTEXT_FIELDS if hasattr(record, key)}
        )
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Column-aligned text lines for tailing a component's log file."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)-22s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


# ============================================================================
# LOGGER FACTORY
# ============================================================================

_loggers: dict[str, logging.Logger] = {}


def create_module_log_directories() -> dict[str, str]:
    """Create logs/ and one sub-folder per configured component. Returns key -> path."""
    root = Path(_LOG_DIR)
    root.mkdir(parents=True, exist_ok=True)
    created = {}
    for key, folder_name in _MODULE_FOLDERS.items():
        folder = root / folder_name
        folder.mkdir(exist_ok=True)
        created[key] = str(folder)
    return created


def setup_module_logger(
    name: str,
    log_file: str,
    level: int = logging.INFO,
    module_folder: str | None = None,
    use_json_formatter: bool = False,
) -> logging.Logger:
    """
    Return the file logger for one component, creating it on first use.

    Args:
        name: Logger name, one per component.
        log_file: File name, placed in logs/<module_folder>/ (or logs/).
        level: Logger and handler level.
        module_folder: Sub-folder of the log directory.
        use_json_formatter: Write JSON lines instead of text.

    Returns:
        A non-propagating logging.Logger with a single file handler.
    """
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    if not logger.handlers:
        log_path = Path(_LOG_DIR) / (module_folder or "") / log_file
        log_path.parent.mkdir(parents=True, exist_ok=True)

        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        handler.setLevel(level)
        handler.setFormatter(JSONFormatter() if use_json_formatter else HumanReadableFormatter())
        logger.addHandler(handler)

    _loggers[name] = logger
    return logger
