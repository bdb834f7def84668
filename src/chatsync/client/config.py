"""ClientConfig -- 后端 API 客户端配置加载

从环境变量加载配置，不硬编码后端地址。
"""

import os

import structlog
from pydantic import BaseModel, Field, SecretStr

log = structlog.get_logger()


class ClientConfig(BaseModel):
    """API 客户端配置 -- 从环境变量加载

    环境变量:
        CHATSYNC_API_URL: 后端基础 URL（默认 http://localhost:3000）
        CHATSYNC_API_TOKEN: Bearer 访问令牌
        CHATSYNC_API_TIMEOUT_S: 请求超时（秒，默认 30）
    """

    base_url: str = Field(
        default="http://localhost:3000",
        description="聊天后端基础 URL",
    )
    api_token: SecretStr = Field(
        default=SecretStr(""),
        description="Bearer 访问令牌，空串时不发送 Authorization 头",
    )
    timeout_s: int = Field(
        default=30,
        ge=1,
        description="普通请求超时（秒），AI 流读取不受此限制",
    )


def load_client_config() -> ClientConfig:
    """从环境变量加载客户端配置

    环境变量映射:
        CHATSYNC_API_URL -> base_url (默认 "http://localhost:3000")
        CHATSYNC_API_TOKEN -> api_token (默认 "")
        CHATSYNC_API_TIMEOUT_S -> timeout_s (默认 30)

    Returns:
        ClientConfig 实例
    """
    kwargs: dict = {}

    if val := os.environ.get("CHATSYNC_API_URL"):
        kwargs["base_url"] = val

    if val := os.environ.get("CHATSYNC_API_TOKEN"):
        kwargs["api_token"] = SecretStr(val)

    if val := os.environ.get("CHATSYNC_API_TIMEOUT_S"):
        try:
            timeout_s = int(val)
        except ValueError:
            timeout_s = 0
        if timeout_s >= 1:
            kwargs["timeout_s"] = timeout_s
        else:
            log.warning(
                "invalid_timeout_config",
                env_var="CHATSYNC_API_TIMEOUT_S",
                value=val,
                fallback=30,
            )

    return ClientConfig(**kwargs)
