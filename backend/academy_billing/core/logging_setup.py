import logging
import sys

from academy_billing.core.config import settings

handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
if settings.log_file:
    handlers.append(logging.FileHandler(settings.log_file, encoding="utf-8"))

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    handlers=handlers,
)

logger = logging.getLogger("academy_billing")


def get_logger(name: str) -> logging.Logger:
    """Child logger of the application logger, e.g. ``academy_billing.billing``."""
    return logger.getChild(name)
