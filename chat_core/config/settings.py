"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
推理服务（Ollama）与后端存储的基础 URL 都在这里集中配置，
客户端在构造时拿到配置对象，而不是在方法内部临时读取全局状态。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CORE_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 服务地址 ----
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="推理服务基础URL（Ollama 兼容接口）",
    )
    backend_base_url: str = Field(
        default="http://localhost:8080",
        description="聊天记录后端基础URL",
    )
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    stream_timeout: float = Field(
        default=300.0,
        ge=1.0,
        description="流式响应读取超时（秒），模型首个 token 可能很慢",
    )

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 流解析与重命名策略 ----
    max_decode_failures: int = Field(
        default=5,
        ge=1,
        le=100,
        description="连续解析失败多少帧后放弃整个流",
    )
    control_marker_policy: Literal["strip", "bracket"] = Field(
        default="strip",
        description="<think> 标记处理方式：strip 删除，bracket 替换为 [think]",
    )
    rename_every: int = Field(default=10, ge=2, description="每隔多少条消息重新命名一次")
    rename_model: Optional[str] = Field(default=None, description="生成聊天名称所用模型")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("ollama_base_url", "backend_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
