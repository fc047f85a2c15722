# parsekit/config/settings.py
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env early so os.getenv-based helpers see the same values
load_dotenv(find_dotenv(usecwd=True), override=False)

DEFAULT_SERVER_URL = "https://api.parse.com/1/"
FIELD_FORMATS = ("columnize", "camelize", "identity")


# ---------------------------
# Settings (env-driven config)
# ---------------------------
class ClientSettings(BaseSettings):
    server_url: str = DEFAULT_SERVER_URL
    app_id: Optional[str] = None
    api_key: Optional[str] = None
    master_key: Optional[str] = None
    webhook_key: Optional[str] = None

    # cache
    cache_enabled: bool = True
    cache_ttl: int = 0  # seconds; 0 means "do not cache"
    cache_min_body_bytes: int = 20
    cache_url: Optional[str] = None  # redis://... shares the cache across processes

    # retry / transport
    retry_limit: int = 5
    retry_base_delay: float = 0.5
    retry_max_delay: float = 30.0
    request_timeout: float = 30.0
    get_url_limit: int = 2000

    # batch
    batch_size: int = 50
    batch_workers: int = 2

    # query
    max_limit: int = 11000  # value sent for limit("max"); never a clamp
    field_format: str = "columnize"

    model_config = SettingsConfigDict(
        env_prefix="PARSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("server_url")
    @classmethod
    def _trailing_slash(cls, v: str) -> str:
        v = (v or DEFAULT_SERVER_URL).strip()
        return v if v.endswith("/") else v + "/"

    @field_validator("field_format")
    @classmethod
    def _known_format(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in FIELD_FORMATS:
            raise ValueError(f"field_format must be one of {', '.join(FIELD_FORMATS)}")
        return v


@lru_cache
def get_settings() -> ClientSettings:
    return ClientSettings()
