import logging
import sys
from pathlib import Path

from pbx_billing.core.config import settings

_handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
if settings.log_file:
    Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
    _handlers.append(logging.FileHandler(settings.log_file, encoding="utf-8"))

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    handlers=_handlers,
)

logger = logging.getLogger("pbx_billing")


def get_logger(component: str) -> logging.Logger:
    return logger.getChild(component)
