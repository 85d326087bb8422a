"""Logging setup shared by the API, the worker and the CLI."""

import logging
import sys

from audit_ledger.settings import get_settings

JSON_FORMAT = '{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s", "module": "%(name)s"}'
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level=None) -> None:
    """Configure root logging once, on stdout."""
    settings = get_settings()
    logging.basicConfig(
        level=level or settings.log_level,
        format=JSON_FORMAT if settings.log_format == "json" else TEXT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
