from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    # Credentials
    baidu_api_key: str = Field('', alias='BAIDU_API_KEY')
    baidu_secret_key: str = Field('', alias='BAIDU_SECRET_KEY')
    baidu_base_url: str = Field('https://aip.baidubce.com', alias='BAIDU_BASE_URL')

    # Token cache
    token_cache_key_prefix: str = Field('baidu_api_access_token_', alias='TOKEN_CACHE_KEY_PREFIX')
    token_cache_ttl: int = Field(3600, alias='TOKEN_CACHE_TTL')
    token_cache_url: str = Field('', alias='TOKEN_CACHE_URL')

    # HTTP
    http_timeout_seconds: float = Field(60.0, alias='HTTP_TIMEOUT_SECONDS')

    # Polling
    poll_timeout_seconds: float = Field(30.0, alias='POLL_TIMEOUT_SECONDS')
    poll_interval_seconds: float = Field(3.0, alias='POLL_INTERVAL_SECONDS')

    # Logging
    log_level: str = Field('INFO', alias='LOG_LEVEL')


@lru_cache

def get_settings() -> Settings:
    return Settings()
