"""
Logging configuration for moments.

Suppress verbose library output by default for better UX.
"""

import logging
import os
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_FILENAME = "moments-ops.log"

# Third-party loggers that are chatty at INFO
_LIBRARY_LOGGERS = ("sentence_transformers", "transformers", "httpx", "httpcore", "qdrant_client")


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    This silences:
    - HuggingFace progress bars (local embedding model downloads)
    - HTTP request lines from httpx
    - Library warnings (deprecation, etc.)

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if not quiet:
        return
    os.environ["HF_HUB_DISABLE_PROGRESS_BARS"] = "1"
    os.environ["TRANSFORMERS_VERBOSITY"] = "error"
    os.environ["TOKENIZERS_PARALLELISM"] = "false"

    warnings.filterwarnings("ignore")

    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")
    os.environ.pop("HF_HUB_DISABLE_PROGRESS_BARS", None)
    os.environ.pop("TRANSFORMERS_VERBOSITY", None)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("moments", *_LIBRARY_LOGGERS):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(store_path) -> RotatingFileHandler:
    """Configure a persistent operations log for a journal store.

    Writes to {store_path}/moments-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    log_path = Path(store_path) / OPS_LOG_FILENAME
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    moments_logger = logging.getLogger("moments")
    moments_logger.addHandler(handler)
    # INFO must get through even in quiet mode
    if moments_logger.level == logging.NOTSET or moments_logger.level > logging.INFO:
        moments_logger.setLevel(logging.INFO)

    return handler


def remove_ops_log(handler: RotatingFileHandler) -> None:
    """Detach and close a handler returned by configure_ops_log."""
    logging.getLogger("moments").removeHandler(handler)
    handler.close()
