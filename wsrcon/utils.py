import re
import time
import logging
from typing import Any, Dict, Optional, Union
from typing import Literal


_TEXT_FORMAT_RE = re.compile("§[0-9a-zA-Z]")
_ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")


def clean_text_format(message: str) -> str:
    """
    Remove Minecraft formatting codes (e.g. ``§a``) and ANSI escape sequences from console text.
    """
    return _ANSI_ESCAPE_RE.sub("", _TEXT_FORMAT_RE.sub("", message))


def format_timestamp(now: Optional[float] = None, fmt: str = "%H:%M:%S") -> str:
    return time.strftime(fmt, time.localtime(now))


def setup_logging(verbose: Union[bool, Literal['disabled']]):
    class Formatter(logging.Formatter):
        def format(self, record: logging.LogRecord):
            levelname = record.levelname[0]
            message = record.getMessage()
            if levelname == "D":
                return f"\033[0;36mdebug:\033[0m {message}"
            elif levelname == "I":
                return f"\033[1;36minfo:\033[0m {message}"
            elif levelname == "W":
                return f"\033[0;1;33mwarning: {message}\033[0m"
            elif levelname == "E":
                return f"\033[0;1;31merror: {message}\033[0m"
            else:
                return message

    kwargs: Dict[str, Any] = {"force": True}
    if verbose == "disabled":
        logging.basicConfig(level=logging.FATAL, **kwargs)
    elif verbose:
        logging.basicConfig(level=logging.DEBUG, **kwargs)
    else:
        import warnings
        logging.basicConfig(level=logging.INFO, **kwargs)
        warnings.formatwarning = lambda message, *args, **kwargs: str(message)
    for handler in logging.root.handlers:
        handler.setFormatter(Formatter())
    logging.captureWarnings(True)
