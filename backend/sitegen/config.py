from pydantic_settings import BaseSettings
from functools import lru_cache
import os


class Settings(BaseSettings):
    # Generation service
    generation_backend: str = "openai"  # openai | ollama | anthropic
    generation_api_key: str = ""
    generation_base_url: str = "https://api.deepseek.com/v1/chat/completions"
    generation_model: str = "deepseek-chat"
    ollama_url: str = "http://localhost:11434/api/generate"
    ollama_model: str = "deepseek-coder"
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    temperature: float = 0.8
    top_p: float = 0.95
    max_attempts: int = 2
    retry_backoff: float = 2.0  # seconds
    generation_soft_timeout: float = 180.0  # seconds

    # Sandbox
    daytona_api_key: str = ""
    sandbox_project_root: str = "/home/daytona/site"
    preview_port: int = 3000
    install_timeout: int = 180  # seconds
    server_ready_timeout: int = 60  # seconds
    sandbox_auto_stop_minutes: int = 30

    # Sessions
    session_idle_minutes: int = 30  # idle sessions are closed with their sandbox
    session_sweep_interval: int = 300  # seconds

    # Credential store
    users_file: str = os.path.join(os.path.dirname(__file__), "..", "users.txt")

    class Config:
        # .env in the repo root is optional; env vars win
        _env_path = os.path.join(os.path.dirname(__file__), "..", "..", ".env")
        env_file = _env_path if os.path.exists(_env_path) else None
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings():
    return Settings()
