"""structlog 配置模块

dev 模式：pretty print 可读输出
json 模式：结构化 JSON 输出

消息正文可能很长（AI 回复、粘贴内容），写入日志前统一截断；
会话内的后台任务通过 room_log_context 自动携带 room_id/user_id。

进程入口（CLI 或嵌入方的启动代码）调用一次 setup_logging，库内部不调用。
"""

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

# 日志中正文类字段的最大长度
MAX_LOGGED_TEXT = 200

_TEXT_FIELDS = ("content", "payload", "original_content")

# 每个请求一条 INFO 日志的第三方库
_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite")


def clip_message_text(
    logger: object,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """截断正文类字段"""
    for key in _TEXT_FIELDS:
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > MAX_LOGGED_TEXT:
            event_dict[key] = f"{value[:MAX_LOGGED_TEXT]}...(+{len(value) - MAX_LOGGED_TEXT})"
    return event_dict


def setup_logging(log_format: str | None = None, log_level: str | None = None) -> None:
    """初始化 structlog 配置

    参数缺省时读取环境变量：
    - CHATSYNC_LOG_FORMAT: "json" 结构化输出，"dev"（默认）可读输出
    - CHATSYNC_LOG_LEVEL: 根日志级别（默认 INFO）
    """
    log_format = log_format or os.environ.get("CHATSYNC_LOG_FORMAT", "dev")
    log_level = log_level or os.environ.get("CHATSYNC_LOG_LEVEL", "INFO")

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        clip_message_text,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=shared_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def room_log_context(room_id: str, user_id: str) -> Iterator[None]:
    """在当前上下文内为日志绑定 room_id/user_id，退出时恢复"""
    with structlog.contextvars.bound_contextvars(room_id=room_id, user_id=user_id):
        yield
