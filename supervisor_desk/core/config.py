from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List, Optional


# Checked in declaration order; the first category with a keyword hit wins.
DEFAULT_CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    "hours": ["hour", "open", "close", "timing", "schedule"],
    "pricing": ["price", "cost", "charge", "fee", "much"],
    "services": ["service", "offer", "haircut", "color", "treatment"],
    "booking": ["book", "appointment", "reserve", "schedule"],
    "location": ["location", "address", "where", "find"],
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database Configuration
    database_path: str = "supervisor_desk.db"
    database_timeout_seconds: float = 5.0

    # Matching Configuration
    confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    category_keywords: Dict[str, List[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_CATEGORY_KEYWORDS.items()}
    )
    seed_knowledge_base: bool = True

    # Help Request Configuration
    escalation_window_minutes: float = Field(default=30, gt=0)
    sweep_interval_seconds: float = Field(default=60, gt=0)

    # Notification Configuration
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 5.0

    # Application Configuration
    app_name: str = "Supervisor Desk"
    log_level: str = "INFO"
    debug: bool = False


# Global settings instance
settings = Settings()
