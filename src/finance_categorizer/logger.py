import logging
import logging.config
import os
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILENAME = "categorizer.log"

# HTTP and SDK loggers that log every request at INFO.
CLIENT_LOGGERS = ("httpx", "httpcore", "openai")


class ColourizedFormatter(logging.Formatter):
    """
    Colours the level name for terminal output.

    Colours are on when the output is a TTY and ``NO_COLOR`` is unset, unless
    ``use_colors`` says otherwise. The record handed to other handlers is left as is.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\x1b[90m",
        logging.INFO: "\x1b[32m",
        logging.WARNING: "\x1b[33m",
        logging.ERROR: "\x1b[31m",
        logging.CRITICAL: "\x1b[31;1m",
    }
    RESET = "\x1b[0m"

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        style: str = "%",
        use_colors: bool | None = None,
    ) -> None:
        super().__init__(fmt, datefmt, style)
        if use_colors is None:
            use_colors = sys.stdout.isatty() and "NO_COLOR" not in os.environ
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLORS.get(record.levelno)
        if not self.use_colors or colour is None:
            return super().format(record)
        coloured = logging.makeLogRecord(record.__dict__)
        coloured.levelname = f"{colour}{record.levelname}{self.RESET}"
        return super().format(coloured)


def get_logging_config() -> dict:
    """
    Build the dictConfig for the engine.

    ``LOG_LEVEL`` sets the root level, ``LOG_CLIENT_LEVEL`` the level of the HTTP
    client loggers, and ``LOG_DIR`` adds a rotating plain-text file handler.
    """
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    client_level_name = os.getenv("LOG_CLIENT_LEVEL", "WARNING").upper()
    log_dir = os.getenv("LOG_DIR")

    handlers: dict[str, dict] = {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "formatter": "default",
        },
    }
    root_handlers = ["console"]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": os.path.join(log_dir, LOG_FILENAME),
            "maxBytes": 5 * 1024 * 1024,
            "backupCount": 3,
            "encoding": "utf-8",
            "formatter": "plain",
        }
        root_handlers.append("file")

    loggers: dict[str, dict] = {
        "": {"handlers": root_handlers, "level": log_level_name},
    }
    for name in CLIENT_LOGGERS:
        loggers[name] = {"handlers": root_handlers, "level": client_level_name, "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"()": "finance_categorizer.logger.ColourizedFormatter", "format": LOG_FORMAT},
            "plain": {"format": LOG_FORMAT},
        },
        "handlers": handlers,
        "loggers": loggers,
    }


def setup_logging() -> None:
    logging.config.dictConfig(get_logging_config())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
