import logging
import sys
from textwrap import shorten


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(verbosity: int = 0, quiet: bool = False) -> None:
    level = logging.INFO
    if verbosity >= 1:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        stream=sys.stdout,
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def clip(text: str, width: int = 2000) -> str:
    """로그에 남길 외부 명령 출력을 잘라낸다."""
    return shorten(text.strip(), width=width, placeholder=" …")
