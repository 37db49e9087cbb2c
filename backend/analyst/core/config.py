"""
Centralized configuration management.

All application and engine configuration is loaded and validated here.
"""
import os
import logging
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class Settings(BaseModel):
    """Application settings with validation."""

    # File upload settings
    max_file_size_mb: int = Field(default=50, ge=1, le=1000, description="Maximum file size in MB")
    max_file_rows: int = Field(default=1000000, ge=1000, description="Maximum rows in uploaded file")
    max_file_columns: int = Field(default=1000, ge=10, description="Maximum columns in uploaded file")
    max_cell_size_bytes: int = Field(default=100000, ge=1000, description="Maximum cell value size in bytes")

    # HTTP
    rate_limit_per_minute: int = Field(default=10, ge=1, le=1000, description="Rate limit per minute per IP")
    request_timeout_seconds: int = Field(default=300, ge=1, le=3600, description="Request timeout in seconds")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:3001",
        description="Comma-separated list of allowed CORS origins"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # AI boundary
    groq_api_key: Optional[str] = Field(default=None, description="Groq API key (primary provider)")
    gemini_api_key: Optional[str] = Field(default=None, description="Gemini API key (fallback provider)")
    groq_model: str = Field(default="llama-3.1-8b-instant", description="Groq model to use")
    gemini_model: str = Field(default="gemini-1.5-flash", description="Gemini model to use")
    ai_max_retries: int = Field(default=2, ge=0, le=5, description="Retries per provider call")
    ai_retry_backoff_seconds: float = Field(default=0.5, ge=0, le=5, description="Fixed delay between retries")
    ai_temperature: float = Field(default=0.2, ge=0, le=2)
    response_language: str = Field(default="English", description="Language for AI-written text")

    # Data preparation
    preparation_max_attempts: int = Field(default=3, ge=1, le=10)
    preparation_sample_rows: int = Field(default=20, ge=1)
    analysis_sample_rows: int = Field(default=5, ge=1)
    transform_timeout_seconds: float = Field(default=10.0, gt=0, le=300, description="Hard deadline for one transform run")

    # Analysis plans
    max_analysis_plans: int = Field(default=12, ge=1)
    min_analysis_plans: int = Field(default=4, ge=0)
    fallback_plan_count: int = Field(default=8, ge=1)

    # Chronological sort heuristics
    chronological_sample_size: int = Field(default=10, ge=1)
    chronological_match_threshold: float = Field(default=0.5, gt=0, le=1)
    two_digit_year_pivot: int = Field(default=50, ge=0, le=99)

    # Card display defaults
    default_top_n: int = Field(default=8, ge=1)
    top_n_category_threshold: int = Field(default=15, ge=1)

    # Orchestrator pacing
    plan_start_delay_seconds: float = Field(default=1.0, ge=0)
    action_pacing_seconds: float = Field(default=0.75, ge=0)

    # Session persistence
    storage_backend: str = Field(default="memory", description="memory or redis")
    redis_url: Optional[str] = Field(default=None)
    session_ttl_seconds: int = Field(default=86400, ge=60)

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @field_validator('storage_backend')
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        if v.lower() not in ("memory", "redis"):
            raise ValueError(f"STORAGE_BACKEND must be 'memory' or 'redis', got '{v}'")
        return v.lower()

    @property
    def max_file_size_bytes(self) -> int:
        """Get max file size in bytes."""
        return self.max_file_size_mb * 1024 * 1024

    @property
    def allowed_origins_list(self) -> List[str]:
        """Get allowed origins as a list."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def ai_configured(self) -> bool:
        return bool(self.groq_api_key or self.gemini_api_key)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables."""
        return cls(
            max_file_size_mb=int(os.getenv("MAX_FILE_SIZE_MB", "50")),
            max_file_rows=int(os.getenv("MAX_FILE_ROWS", "1000000")),
            max_file_columns=int(os.getenv("MAX_FILE_COLUMNS", "1000")),
            max_cell_size_bytes=int(os.getenv("MAX_CELL_SIZE_BYTES", "100000")),
            rate_limit_per_minute=int(os.getenv("RATE_LIMIT_PER_MINUTE", "10")),
            request_timeout_seconds=int(os.getenv("REQUEST_TIMEOUT_SECONDS", "300")),
            allowed_origins=os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:3001"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            groq_api_key=os.getenv("GROQ_API_KEY") or None,
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            groq_model=os.getenv("GROQ_MODEL", "llama-3.1-8b-instant"),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-1.5-flash"),
            ai_max_retries=int(os.getenv("AI_MAX_RETRIES", "2")),
            ai_retry_backoff_seconds=float(os.getenv("AI_RETRY_BACKOFF_SECONDS", "0.5")),
            ai_temperature=float(os.getenv("AI_TEMPERATURE", "0.2")),
            response_language=os.getenv("RESPONSE_LANGUAGE", "English"),
            preparation_max_attempts=int(os.getenv("PREPARATION_MAX_ATTEMPTS", "3")),
            preparation_sample_rows=int(os.getenv("PREPARATION_SAMPLE_ROWS", "20")),
            analysis_sample_rows=int(os.getenv("ANALYSIS_SAMPLE_ROWS", "5")),
            transform_timeout_seconds=float(os.getenv("TRANSFORM_TIMEOUT_SECONDS", "10")),
            max_analysis_plans=int(os.getenv("MAX_ANALYSIS_PLANS", "12")),
            min_analysis_plans=int(os.getenv("MIN_ANALYSIS_PLANS", "4")),
            fallback_plan_count=int(os.getenv("FALLBACK_PLAN_COUNT", "8")),
            chronological_sample_size=int(os.getenv("CHRONOLOGICAL_SAMPLE_SIZE", "10")),
            chronological_match_threshold=float(os.getenv("CHRONOLOGICAL_MATCH_THRESHOLD", "0.5")),
            two_digit_year_pivot=int(os.getenv("TWO_DIGIT_YEAR_PIVOT", "50")),
            default_top_n=int(os.getenv("DEFAULT_TOP_N", "8")),
            top_n_category_threshold=int(os.getenv("TOP_N_CATEGORY_THRESHOLD", "15")),
            plan_start_delay_seconds=float(os.getenv("PLAN_START_DELAY_SECONDS", "1.0")),
            action_pacing_seconds=float(os.getenv("ACTION_PACING_SECONDS", "0.75")),
            storage_backend=os.getenv("STORAGE_BACKEND", "memory"),
            redis_url=os.getenv("REDIS_URL") or None,
            session_ttl_seconds=int(os.getenv("SESSION_TTL_SECONDS", "86400")),
        )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get application settings (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
        logger.info("Configuration loaded and validated successfully")
    return _settings


def reload_settings() -> Settings:
    """Reload settings (useful for testing)."""
    global _settings
    _settings = None
    return get_settings()
