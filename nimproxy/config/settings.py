"""Runtime settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True, protected_namespaces=())

    service_name: str = "nim-proxy"
    log_level: str = "info"
    # 日志文件目录；不可写时只输出到 stderr
    log_dir: str = "logs"
    host: str = "0.0.0.0"
    port: int = 3000
    cors_allow_origins: str = "*"

    nim_api_base: str = "https://integrate.api.nvidia.com/v1"
    nim_api_key: str | None = None
    upstream_timeout_seconds: float = Field(default=60.0, gt=0)
    upstream_max_connections: int = 100
    upstream_max_keepalive_connections: int = 20

    default_upstream_model: str = "meta/llama-3.1-8b-instruct"
    # 为空时使用内置映射表；否则从 YAML 文件加载
    model_mapping_path: str = ""
    model_owner: str = "railway-nim"

    show_reasoning: bool = False
    enable_thinking_mode: bool = False


settings = Settings()
