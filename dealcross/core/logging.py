import logging
import sys
from pythonjsonlogger import jsonlogger
from dealcross.core.config import Settings
from dealcross.core.middleware import RequestIdLogFilter

FIELDS = "%(asctime)s %(levelname)s %(name)s %(request_id)s %(message)s"


def configure_logging(settings: Settings) -> None:
    """
    Logging to stdout: JSON by default, plain lines when `log_json` is off.
    Every record carries `request_id` (null outside a request).
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    # clear handlers if reloaded
    root.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_json:
        fmt = jsonlogger.JsonFormatter(
            FIELDS,
            rename_fields={"levelname": "level", "name": "logger"},
        )
    else:
        fmt = logging.Formatter("%(asctime)s %(levelname)-7s %(name)s [%(request_id)s] %(message)s")
    handler.setFormatter(fmt)
    handler.addFilter(RequestIdLogFilter())
    root.addHandler(handler)

    # the access middleware already logs one line per request
    logging.getLogger("uvicorn.access").setLevel(max(level, logging.WARNING))
    logging.getLogger("uvicorn.error").setLevel(level)
    # SQL echo stays off unless explicitly debugging
    logging.getLogger("sqlalchemy.engine").setLevel(max(level, logging.WARNING))
