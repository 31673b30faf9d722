import logging
import os
import sys

LOGGER_NAME = "RequestFiltering"

_STATUS_LEVELS = {
    "BLOCKED": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def setup_logging():
    """Configures logging for request filtering."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    if logger.handlers:
        return logger

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    # Console Handler
    ch = logging.StreamHandler(sys.stderr)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    # File Handler, only when an audit log path is configured
    audit_path = str(os.environ.get("REQUEST_FILTERING_AUDIT_LOG", "")).strip()
    if audit_path:
        fh = logging.FileHandler(audit_path)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    return logger


logger = setup_logging()


def audit(action, details, status="ALLOWED"):
    """Logs an action to the audit log."""
    level = _STATUS_LEVELS.get(str(status).upper(), logging.INFO)
    logger.log(level, f"[{status}] {action}: {details}")