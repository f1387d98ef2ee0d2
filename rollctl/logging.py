"""Logging configuration for the rollctl package."""
import logging

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Libraries that are chatty at DEBUG/INFO
NOISY_LOGGERS = ('urllib3', 'kubernetes', 'requests')


def setup_logging(debug_mode: bool = False) -> None:
    """Configure root logging for a CLI invocation.

    Args:
        debug_mode: Log at DEBUG instead of INFO
    """
    log_level = logging.DEBUG if debug_mode else logging.INFO
    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()],
        force=True,
    )
    if not debug_mode:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
