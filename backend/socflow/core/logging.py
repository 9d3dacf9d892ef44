import logging
import sys
from typing import Optional, TextIO

from socflow.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] incident=%(incident_id)s %(message)s"


class IncidentContextFilter(logging.Filter):
    """
    Fills in incident_id for records logged outside an incident.
    Runs on the handler, after extra= has been applied to the record.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "incident_id"):
            record.incident_id = "-"
        return True


def build_handler(stream: Optional[TextIO] = None) -> logging.Handler:
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(IncidentContextFilter())
    return handler


def setup_logging(level: Optional[str] = None) -> None:
    level = (level or settings.LOG_LEVEL or "INFO").upper()
    # no-op when the host (uvicorn, pytest) already configured the root logger
    logging.basicConfig(level=level, handlers=[build_handler()])
    logging.getLogger("socflow").setLevel(level)
