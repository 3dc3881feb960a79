from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    app_env: str = "development"
    log_level: str = "INFO"
    json_logs: bool = False

    # Provider keys (DashScope exposes Qwen through an OpenAI-compatible API)
    qwen_api_key: str = ""
    qwen_base_url: str = "https://dashscope.aliyuncs.com/compatible-mode/v1/"
    openai_api_key: str = ""
    openai_base_url: str = ""

    # Storage: empty redis_url keeps the ledger and cache in process memory
    redis_url: str = ""

    # Config paths
    models_config_path: str = "config/models.yaml"
    task_policies_path: str = "config/task_policies.yaml"

    # Budget
    daily_budget: float = 10.0
    warning_fraction: float = 0.70
    degrade_fraction: float = 0.90

    # Dispatch
    rate_limit_backoff_seconds: float = 2.0
    fallback_message: str = "Sorry, the AI service is temporarily unavailable. Please try again later."

    # Images
    image_resolve_timeout_seconds: float = 10.0
    image_fetch_max_bytes: int = 5 * 1024 * 1024
    image_local_root: str = ""  # empty disables file: image refs

    # Cache
    cache_ttl_seconds: int = 3600
    cache_ttl_vision_seconds: int = 600

    # Signal analysis
    complex_keywords: str = (
        "死亡,批量,疑难,鉴别诊断,突然,大量,剖析,"
        "death,mortality,autopsy,differential,sudden,outbreak,mass"
    )
    urgent_keywords: str = "紧急,急救,urgent,emergency,asap"
    long_text_tokens: int = 3000

    # Audit
    audit_log_path: str = ""

    @property
    def complex_keywords_list(self) -> List[str]:
        return [k.strip().lower() for k in self.complex_keywords.split(",") if k.strip()]

    @property
    def urgent_keywords_list(self) -> List[str]:
        return [k.strip().lower() for k in self.urgent_keywords.split(",") if k.strip()]

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"


@lru_cache
def get_settings() -> Settings:
    return Settings()
