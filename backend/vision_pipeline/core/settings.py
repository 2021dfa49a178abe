from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Vision Job Pipeline"
    database_url: str = "sqlite:///./backend/vision_jobs.db"
    log_level: str = "INFO"

    # Pipeline knobs
    poll_interval_s: float = 2.0
    max_concurrent_jobs: int = 3
    job_timeout_s: float = 300.0
    max_retries: int = 3
    worker_enabled: bool = True

    # Stage clients
    analyzer_provider: str = "mock"
    generator_provider: str = "mock"
    request_timeout_s: float = 60.0
    gemini_api_key: str = ""
    gemini_api_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-2.0-flash"
    deepseek_api_key: str = ""
    deepseek_api_url: str = "https://api.deepseek.com/v1/chat/completions"
    deepseek_model: str = "deepseek-chat"

    # Observer sessions
    session_ttl_s: int = 900

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
