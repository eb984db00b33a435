import logging
import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - {message}"
)


class InterceptHandler(logging.Handler):
    """Route stdlib logging records (uvicorn, cloud SDKs) into loguru."""

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Reset loguru to a single stderr sink and intercept stdlib loggers."""
    logger.remove()
    if json_logs:
        logger.add(sys.stderr, level=level, serialize=True, enqueue=False)
    else:
        logger.add(sys.stderr, level=level, format=LOG_FORMAT, enqueue=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False
