"""
Logging configuration

Lines logged while a job is being processed carry its tag in `{extra[job]}`
(platform#id), bound by the worker pool with `log.contextualize(job=...)`.
"""
from loguru import logger
import os
import sys
from sync_orchestrator.config import get_settings

settings = get_settings()

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[job]}</magenta> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logger():
    """Stdout sink always; daily rotated sync and error files unless log_to_file is off"""
    logger.remove()  # Remove default handler
    logger.configure(extra={"job": "-"})

    logger.add(sys.stdout, colorize=True, format=LOG_FORMAT, level=settings.log_level, diagnose=False)

    if not settings.log_to_file:
        return logger

    # No variable values in file tracebacks: job locals hold upstream access tokens
    logger.add(
        os.path.join(settings.log_dir, "sync_{time:YYYY-MM-DD}.log"),
        format=LOG_FORMAT,
        rotation="00:00",
        retention=f"{settings.log_retention_days} days",
        compression="zip",
        level="INFO",
        diagnose=False,
    )

    logger.add(
        os.path.join(settings.log_dir, "errors_{time:YYYY-MM-DD}.log"),
        format=LOG_FORMAT,
        rotation="00:00",
        retention=f"{settings.error_log_retention_days} days",
        level="ERROR",
        backtrace=True,
        diagnose=False,
    )

    return logger


# Initialize logger
log = setup_logger()
