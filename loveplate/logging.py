import logging
from enum import Enum

LOG_FORMAT_DEBUG = (
    "%(asctime)s %(levelname)s:%(pathname)s:%(funcName)s:%(lineno)d: %(message)s"
)

# Pillow and botocore are chatty at DEBUG; keep them at WARNING unless asked
NOISY_LOGGERS = ("PIL", "botocore", "boto3", "s3transfer", "urllib3", "httpx")


class LogLevels(Enum):
    info = "INFO"
    warn = "WARNING"
    error = "ERROR"
    debug = "DEBUG"


def configure_logging(log_level: LogLevels, quiet_libraries: bool = True):
    level = str(log_level.value).upper()
    valid_levels = {lvl.value.upper() for lvl in LogLevels}

    if level not in valid_levels:
        print(
            f"Invalid log level: '{level}'. "
            f"Valid levels are: {sorted(valid_levels)}"
        )
        level = LogLevels.error.value

    logging.basicConfig(level=level, format=LOG_FORMAT_DEBUG)

    if quiet_libraries:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured at level {level}")
