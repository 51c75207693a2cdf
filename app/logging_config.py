import logging
from logging.handlers import RotatingFileHandler
import os

LOG_DIR = os.getenv("LOG_DIR", "/logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
os.makedirs(LOG_DIR, exist_ok=True)

FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def get_logger(name, filename=None):
    """
    Component logger writing to LOG_DIR/<filename> (rotating) and stderr.
    Ingestion, sessions, geofences and analytics each get their own file.
    """
    logger = logging.getLogger(name)
    logger.setLevel(LOG_LEVEL)

    # Avoid duplicated handlers
    if logger.handlers:
        return logger

    formatter = logging.Formatter(FORMAT)

    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, filename or f"{name}.log"),
        maxBytes=5_000_000,
        backupCount=3
    )
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)

    return logger


defect_logger = get_logger("defects", "defects.log")

def log_defect(component: str, device_id, detail: str) -> None:
    """Invariant violations are reconciled in place, this keeps a trail of them."""
    defect_logger.error(f"[{component}] [defect] device={device_id} {detail}")
