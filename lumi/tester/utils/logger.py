import logging
import os

from rich.logging import RichHandler

SUCCESS_LEVEL = 25
logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")

_configured: set[str] = set()


class LumiLogger:
    """Logger wrapper adding a SUCCESS level and rich console rendering."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        if name not in _configured:
            level = os.getenv("LUMI_LOG_LEVEL", "INFO").upper()
            self.logger.setLevel(level)
            if not self.logger.handlers:
                handler = RichHandler(
                    rich_tracebacks=True,
                    show_path=False,
                    markup=False,
                    log_time_format="[%X]",
                )
                handler.setFormatter(logging.Formatter("%(message)s"))
                self.logger.addHandler(handler)
            self.logger.propagate = False
            _configured.add(name)

    def debug(self, message: str, *args, **kwargs):
        self.logger.debug(message, *args, **kwargs)

    def info(self, message: str, *args, **kwargs):
        self.logger.info(message, *args, **kwargs)

    def success(self, message: str, *args, **kwargs):
        self.logger.log(SUCCESS_LEVEL, message, *args, **kwargs)

    def warning(self, message: str, *args, **kwargs):
        self.logger.warning(message, *args, **kwargs)

    def error(self, message: str, *args, **kwargs):
        self.logger.error(message, *args, **kwargs)

    def exception(self, message: str, *args, **kwargs):
        self.logger.exception(message, *args, **kwargs)


def get_logger(name: str) -> LumiLogger:
    return LumiLogger(name)
