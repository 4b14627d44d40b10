from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str = "sqlite:///./unsubscriber.db"
    frontend_url: str = "http://localhost:5173"
    log_level: str = "INFO"

    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    ai_timeout: float = 45.0

    # Third-party unsubscribe endpoints
    http_timeout: float = 20.0
    user_agent: str = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36"
    placeholder_email: str = "user@example.com"

    # Browser automation
    browser_headless: bool = True
    max_browser_sessions: int = 1
    page_load_timeout_ms: int = 30000
    page_settle_seconds: float = 0.5
    submit_settle_seconds: float = 2.0
    screenshot_dir: str = "screenshots"

    # Job queue
    job_worker_enabled: bool = True
    unsubscribe_concurrency: int = 4
    unsubscribe_max_attempts: int = 2
    retry_backoff_seconds: float = 30.0
    job_poll_interval: float = 2.0

    @property
    def ai_enabled(self) -> bool:
        """Check if an AI backend is configured."""
        return bool(self.openai_api_key)

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
