import logging
import os
from typing import Optional


def grey(text: str) -> str:
    return f"\x1b[90m{text}\x1b[0m"


class HistofyLogFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        pathname: str = record.pathname
        cwd: str = os.getcwd()
        if pathname.startswith(cwd):
            record.ref = f"{os.path.relpath(pathname, cwd)}:{record.lineno}"
        else:
            record.ref = f".../{os.path.basename(pathname)}:{record.lineno}"
        return True


__log_format__: str = f"%(levelname)8s %(name)-24s %(message)s {grey('%(ref)s')}"

_handler: Optional[logging.Handler] = None


def configure_logging(verbose: bool = False) -> logging.Logger:
    """Attach the histofy handler to the package logger, once."""
    global _handler

    logger = logging.getLogger("histofy")
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)

    if _handler is None:
        _handler = logging.StreamHandler()
        _handler.setFormatter(logging.Formatter(__log_format__))
        _handler.addFilter(HistofyLogFilter())
        logger.addHandler(_handler)

    return logger
