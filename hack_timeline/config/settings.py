"""
Global configuration - hack_timeline runtime parameters
Environment variables switch between development / test / production
"""

import os
from dataclasses import dataclass, field
from typing import List


def _load_channels(env_name: str) -> List[str]:
    """
    Parse a comma-separated channel list, dropping blanks and a leading "@".
    Example:
      TELEGRAM_HACKING_CHANNEL_USERNAMES=defimon_alerts,@hacks_feed
    """
    raw = os.getenv(env_name, "").strip()
    if not raw:
        return []
    out: List[str] = []
    for part in raw.split(","):
        name = part.strip().lstrip("@")
        if name and name not in out:
            out.append(name)
    return out


@dataclass
class TelegramConfig:
    """Channel preview gateway configuration"""
    hacking_channels: List[str] = field(
        default_factory=lambda: _load_channels("TELEGRAM_HACKING_CHANNEL_USERNAMES")
    )
    transfer_channels: List[str] = field(
        default_factory=lambda: _load_channels("TELEGRAM_TRANSFER_CHANNEL_USERNAMES")
    )
    preview_base_url: str = os.getenv("TELEGRAM_PREVIEW_BASE_URL", "https://t.me/s")
    request_timeout_seconds: float = float(os.getenv("TELEGRAM_TIMEOUT_SECONDS", "30"))
    max_pages_per_fetch: int = int(os.getenv("TELEGRAM_MAX_PAGES_PER_FETCH", "20"))
    user_agent: str = os.getenv(
        "TELEGRAM_USER_AGENT",
        "Mozilla/5.0 (compatible; hack-timeline/0.1; +https://t.me)",
    )


@dataclass
class LLMConfig:
    """LLM service configuration"""
    primary_backend: str = os.getenv("LLM_PRIMARY_BACKEND", "gemini")
    # Gemini (OpenAI-compatible endpoint)
    gemini_api_key: str = os.getenv("GEMINI_API_KEY", "")
    gemini_base_url: str = os.getenv(
        "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta/openai"
    )
    gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    # OpenAI-compatible
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    # Ollama
    ollama_base_url: str = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
    ollama_model: str = os.getenv("OLLAMA_MODEL", "qwen2.5:7b")
    # Generation params
    temperature: float = float(os.getenv("LLM_TEMPERATURE", "0.0"))
    max_tokens: int = int(os.getenv("LLM_MAX_TOKENS", "256"))
    # Reliability
    retry_max_attempts: int = int(os.getenv("LLM_RETRY_MAX_ATTEMPTS", "3"))
    retry_base_delay_seconds: float = float(os.getenv("LLM_RETRY_BASE_DELAY_SECONDS", "0.5"))
    timeout_seconds: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
    # Fallback
    fallback_enabled: bool = os.getenv("LLM_FALLBACK_ENABLED", "false").lower() == "true"
    fallback_backend: str = os.getenv("LLM_FALLBACK_BACKEND", "ollama")


@dataclass
class DatabaseConfig:
    """Database configuration"""
    url: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///hack_timeline.db")
    echo: bool = os.getenv("DB_ECHO", "false").lower() == "true"


@dataclass
class ScrapeConfig:
    """Scrape cycle configuration"""
    # Upper bound of concurrent extract+store tasks per channel
    post_concurrency: int = int(os.getenv("SCRAPE_POST_CONCURRENCY", "16"))
    # 0 keeps failed posts in the retry queue forever
    retry_max_attempts: int = int(os.getenv("SCRAPE_RETRY_MAX_ATTEMPTS", "0"))


@dataclass
class SchedulerConfig:
    """Periodic scrape configuration"""
    enabled: bool = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    interval_seconds: int = int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "600"))
    initial_fetch_limit: int = int(os.getenv("SCHEDULER_INITIAL_FETCH_LIMIT", "200"))
    periodic_fetch_limit: int = int(os.getenv("SCHEDULER_PERIODIC_FETCH_LIMIT", "100"))
    cycle_timeout_seconds: float = float(os.getenv("SCHEDULER_CYCLE_TIMEOUT_SECONDS", "180"))
    misfire_grace_time: int = int(os.getenv("SCHEDULER_MISFIRE_GRACE", "300"))


@dataclass
class CacheConfig:
    """Tag cache configuration"""
    backend: str = os.getenv("TAG_CACHE_BACKEND", "memory").strip().lower()
    tag_ttl_seconds: float = float(os.getenv("TAG_CACHE_TTL_SECONDS", "900"))
    redis_url: str = os.getenv("TAG_CACHE_REDIS_URL", "redis://127.0.0.1:6379/0")
    redis_key_prefix: str = os.getenv("TAG_CACHE_REDIS_KEY_PREFIX", "hack_timeline:cache")


@dataclass
class AppConfig:
    """Application configuration"""
    app_name: str = "hack_timeline"
    env: str = os.getenv("APP_ENV", "development")
    debug: bool = os.getenv("DEBUG", "false").lower() == "true"
    host: str = "0.0.0.0"
    port: int = int(os.getenv("PORT", "10000"))

    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    scrape: ScrapeConfig = field(default_factory=ScrapeConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)


# Global settings singleton
settings = AppConfig()
