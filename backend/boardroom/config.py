"""
应用配置模块
Application configuration module
"""

from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # 应用基础配置
    APP_NAME: str = "Boardroom Discussion Engine"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # API 配置
    API_PREFIX: str = "/api/v1"
    CORS_ORIGINS: List[str] = Field(default=["http://localhost:3000"])

    # 本地存储配置
    LOCAL_STORE_BACKEND: str = Field(default="file")  # file | memory
    LOCAL_STORE_DIR: str = Field(default="/tmp/boardroom_store")

    # 讨论引擎配置
    DISCUSSION_MAX_SPEECHES_PER_PARTICIPANT: int = 2
    DISCUSSION_MAX_ROUNDS: int = 3
    DISCUSSION_MAX_TURN_ITERATIONS: int = 20
    DISCUSSION_HISTORY_WINDOW: int = 10
    DISCUSSION_MAX_AGENT_LINES: int = 3
    DISCUSSION_ADVANCE_TIMEOUT: float = 60.0
    DISCUSSION_LOCK_WAIT_SECONDS: float = 0.0

    # LLM 配置
    GROQ_API_KEY: Optional[str] = None
    OPENAI_API_KEY: Optional[str] = None
    GROQ_BASE_URL: str = Field(default="https://api.groq.com/openai/v1")
    OPENAI_BASE_URL: Optional[str] = None
    LLM_DEFAULT_PROVIDER: str = "groq"
    LLM_DEFAULT_MODEL: str = "llama-3.1-8b-instant"
    LLM_OPENAI_FALLBACK_MODEL: str = "gpt-4o-mini"
    LLM_DEFAULT_TEMPERATURE: float = 0.2
    LLM_TIMEOUT: int = 30
    LLM_MAX_RETRIES: int = 2

    # Webhook
    WEBHOOK_SECRET: Optional[str] = None

    # 日志配置
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    # 告警阈值
    ALERT_ERROR_RATE_THRESHOLD: float = 0.2
    ALERT_FALLBACK_RATE_THRESHOLD: float = 0.5
    ALERT_MIN_SAMPLES: int = 20

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @field_validator("LOCAL_STORE_BACKEND", mode="before")
    @classmethod
    def normalize_local_store_backend(cls, v):
        if not v:
            return "file"
        value = str(v).strip().lower()
        if value not in {"file", "memory"}:
            return "file"
        return value

    @field_validator("LLM_DEFAULT_PROVIDER", mode="before")
    @classmethod
    def normalize_default_provider(cls, v):
        return str(v or "groq").strip().lower()

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def provider_api_keys(self) -> Dict[str, Optional[str]]:
        return {
            "groq": self.GROQ_API_KEY,
            "openai": self.OPENAI_API_KEY,
        }

    @property
    def provider_base_urls(self) -> Dict[str, Optional[str]]:
        return {
            "groq": self.GROQ_BASE_URL,
            "openai": self.OPENAI_BASE_URL,
        }

    @property
    def provider_default_models(self) -> Dict[str, str]:
        models = {
            "groq": "llama-3.1-8b-instant",
            "openai": self.LLM_OPENAI_FALLBACK_MODEL,
        }
        models[self.LLM_DEFAULT_PROVIDER] = self.LLM_DEFAULT_MODEL
        return models


@lru_cache
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()


# 导出配置实例
settings = get_settings()
