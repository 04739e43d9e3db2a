"""Logging setup."""
import logging

from zenchat.config import Settings

LOG_FORMAT = "%(levelname)s %(asctime)s [%(name)s:%(lineno)d] %(message)s"


def configure_logging(settings: Settings) -> None:
    """Install the root handler once; later calls only adjust the level."""
    level = (settings.log_level or "INFO").upper()
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    root.setLevel(level)
    # SQL echo only in diagnostic mode
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.expose_error_details else logging.WARNING
    )
