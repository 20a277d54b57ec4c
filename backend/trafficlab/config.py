"""Application configuration."""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "TrafficLab"
    debug: bool = False

    # Database (reference persistence adapter)
    database_url: str = "sqlite:///./trafficlab.db"

    # Redis (shared allocation snapshots across workers)
    redis_url: str = "redis://localhost:6379/0"
    snapshot_cache_enabled: bool = False
    snapshot_ttl_seconds: int = 3600

    # Bucketing
    # When true, variant lists whose traffic does not sum to 100 are rejected
    # instead of falling back to the control variant
    strict_traffic_sum: bool = False
    traffic_sum_tolerance: float = 0.01

    # Bandit optimizer
    bandit_exploration: float = 0.1
    bandit_control_floor: float = 20.0  # percent
    bandit_min_allocation: float = 5.0  # percent

    # Performance evaluation
    confidence_z: float = 1.96  # 95% two-sided

    # CORS
    frontend_url: str = "http://localhost:5173"

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
