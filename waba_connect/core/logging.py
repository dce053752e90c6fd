import logging
import sys
from typing import Optional, Tuple

import newrelic.agent

from waba_connect.core.config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Chatty libraries capped at WARNING
QUIET_LOGGERS = ("uvicorn.access", "uvicorn.error", "httpx", "httpcore", "hpack")


def build_formatter(license_key: Optional[str]) -> Tuple[logging.Formatter, Optional[str]]:
    """
    New Relic's formatter (Logs in Context) when a license key is set, else plain text.
    The second value explains why New Relic was skipped, if it was wanted.
    """
    if not license_key:
        return logging.Formatter(LOG_FORMAT), None
    try:
        return newrelic.agent.NewRelicContextFormatter(), None
    except Exception as e:
        return logging.Formatter(LOG_FORMAT), f"New Relic log formatter unavailable ({type(e).__name__}: {e})"


def setup_logging(level: int = logging.INFO, license_key: Optional[str] = None):
    """
    Configures the root logger for the service: one stdout handler, replaced on
    every call so reloads don't duplicate output.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter, problem = build_formatter(license_key or settings.new_relic_license_key)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if problem:
        logging.getLogger(__name__).warning(f"{problem}; using plain log format")
