"""配置管理模块。

支持从环境变量（前缀 RELAY_）、.env 以及 config.yaml 加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple

import yaml
from pydantic import Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("RELAY_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
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


class YamlConfigSource(PydanticBaseSettingsSource):
    """把 config.yaml 作为一个配置来源（优先级低于环境变量）。"""

    def __init__(self, settings_cls: type[BaseSettings]):
        super().__init__(settings_cls)
        self._data = _load_config_from_yaml()

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return self._data.get(field_name), field_name, False

    def __call__(self) -> Dict[str, Any]:
        fields = self.settings_cls.model_fields
        return {k: v for k, v in self._data.items() if k in fields and v is not None}


class RelaySettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 后端 ----
    base_url: str = Field(
        default="https://chatgpt.com/backend-api",
        description="会话后端的基础 URL",
    )
    access_token: Optional[str] = Field(
        default=None,
        description="可选的预置访问令牌，供 StaticTokenAuthenticator 使用",
    )
    user_agent: str = Field(default="relay-client/0.1", description="HTTP User-Agent")
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    stream_read_timeout: float = Field(
        default=120.0,
        ge=1.0,
        description="流式响应两次数据之间的最大等待时间（秒）",
    )

    # ---- 认证 ----
    auth_timeout: float = Field(default=300.0, gt=0, description="交互式登录的超时时间（秒）")
    credential_ttl: float = Field(
        default=3600.0,
        gt=0,
        description="令牌未携带过期时间时采用的有效期（秒）",
    )
    credential_refresh_skew: float = Field(
        default=60.0,
        ge=0,
        description="距离过期不足该秒数的令牌视为已过期",
    )
    persist_credential: bool = Field(default=True, description="是否把凭据持久化到磁盘")
    debug_keep_login_visible: bool = Field(
        default=False,
        description="调试开关：登录成功后保持登录界面可见",
    )
    login_surface: Literal["console", "tk"] = Field(
        default="console",
        description="未配置 access_token 时使用的登录界面",
    )

    # ---- 会话 ----
    default_model: str = Field(default="auto", description="默认模型，auto 表示由后端选择")
    validate_model: bool = Field(default=True, description="发送前是否校验模型 slug")
    max_concurrent_streams: int = Field(default=4, ge=1, le=32, description="并发流的最大数量")
    stream_accumulate: Literal["append", "replace"] = Field(
        default="append",
        description="增量片段的合并方式：append 追加，replace 以快照覆盖",
    )
    stream_dedupe_by_sequence: bool = Field(
        default=True,
        description="若事件携带 seq，则按 seq 去重/丢弃乱序片段",
    )

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".relay", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("access_token")
    @classmethod
    def validate_access_token(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        if v and len(v) < 10:
            raise ValueError("Access token seems too short")
        return v

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
            YamlConfigSource(settings_cls),
            file_secret_settings,
        )


settings = RelaySettings()
