import logging
import sys

from loguru import logger


class InterceptHandler(logging.Handler):
    """把 stdlib logging 的紀錄轉交給 loguru（各 service 仍用 logging.getLogger）"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO"):
    logger.remove()
    logger.add(sys.stdout, level=level,
               backtrace=True, diagnose=False,
               format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level}</level> | {name} | {message}")
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    return logger
