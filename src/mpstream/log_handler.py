"""Logging handler that turns log records into a measurement stream."""
import logging

from .logger import LOGGER_NAME
from .schema import MeasurementPoint

LOG_POINT = "log"

LOG_FIELDS = [
    "level:int32",
    "level_name:string",
    "logger:string",
    "file:string",
    "line:int32",
    "function:string",
    "message:string",
]


class MeasurementHandler(logging.Handler):
    """
    Inject every log record into a measurement point.

    Records emitted by mpstream's own loggers are skipped; otherwise a
    channel warning would be logged, injected, and so on.

    Example:
        handler = MeasurementHandler(client)
        logging.getLogger("myapp").addHandler(handler)
    """

    def __init__(self, client, point_name: str = LOG_POINT, level=logging.NOTSET):
        super().__init__(level)
        self.client = client
        self.point: MeasurementPoint = client.registry.get_or_define(point_name, LOG_FIELDS)

    def filter(self, record):
        if record.name == LOGGER_NAME or record.name.startswith(LOGGER_NAME + "."):
            return False
        return super().filter(record)

    def emit(self, record):
        try:
            self.client.inject(
                self.point,
                record.levelno,
                record.levelname,
                record.name,
                record.pathname,
                record.lineno,
                record.funcName,
                self.format(record),
            )
        except Exception:
            self.handleError(record)
