"""
日志配置：控制台 + 按大小轮转的文件日志
"""
import logging
import sys
from logging.handlers import RotatingFileHandler

from app.core.config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging() -> None:
    """初始化根日志，重复调用只生效一次"""
    root = logging.getLogger()
    if getattr(root, "_checkout_configured", False):
        return
    level = getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO)
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    try:
        settings.LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            settings.LOG_FILE, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError as e:
        logging.warning("日志文件不可写，仅输出到控制台: %s", e)

    # 第三方库日志降噪
    for name in ("httpx", "httpcore", "sqlalchemy.engine", "celery"):
        logging.getLogger(name).setLevel(logging.WARNING)
    root._checkout_configured = True
