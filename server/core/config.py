"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=4000, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")
    workers: int = Field(default=1, env="WORKERS", ge=1, le=8)

    # Security
    cors_origins: List[str] = Field(default=["http://localhost:3000"], env="CORS_ORIGINS")

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/flowforge.db", env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")

    # Token signing (jwtGenerate / authMiddleware nodes)
    jwt_secret_key: Optional[str] = Field(default=None, env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    jwt_default_expires: str = Field(default="7d", env="JWT_DEFAULT_EXPIRES")

    # Mail (emailSend node)
    smtp_host: Optional[str] = Field(default=None, env="SMTP_HOST")
    smtp_port: int = Field(default=465, env="SMTP_PORT", ge=1, le=65535)
    smtp_user: Optional[str] = Field(default=None, env="SMTP_USER")
    smtp_password: Optional[str] = Field(default=None, env="SMTP_PASSWORD")
    smtp_use_ssl: bool = Field(default=True, env="SMTP_USE_SSL")
    smtp_timeout: int = Field(default=30, env="SMTP_TIMEOUT", ge=1, le=300)
    mail_from: Optional[str] = Field(default=None, env="MAIL_FROM")

    # Workflow proposals (OpenAI-compatible chat completions endpoint)
    llm_base_url: str = Field(default="https://api.groq.com/openai/v1", env="LLM_BASE_URL")
    llm_api_key: Optional[str] = Field(default=None, env="LLM_API_KEY")
    llm_model: str = Field(default="llama-3.3-70b-versatile", env="LLM_MODEL")
    llm_timeout: int = Field(default=60, env="LLM_TIMEOUT", ge=5, le=300)

    # Execution Engine
    execution_max_delay_seconds: float = Field(default=300.0, env="EXECUTION_MAX_DELAY_SECONDS", ge=0)
    execution_skip_input_steps: bool = Field(default=False, env="EXECUTION_SKIP_INPUT_STEPS")

    # Execution log streaming
    log_sink_queue_size: int = Field(default=10000, env="LOG_SINK_QUEUE_SIZE", ge=100)
    log_buffer_size: int = Field(default=1000, env="LOG_BUFFER_SIZE", ge=10)

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":///" in v:
            db_path = v.split("///")[1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
