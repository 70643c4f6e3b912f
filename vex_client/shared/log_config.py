import sys
from loguru import logger


def setup_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Replace loguru's default sink with a stderr sink (and optionally a rotating file)."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    )
    if log_file:
        logger.add(
            log_file,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}",
            rotation="10 MB",
            retention=3,
        )
