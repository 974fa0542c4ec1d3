"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Secrets have no defaults: a process started without them fails at startup.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class ServicingConfig(BaseSettings):
    """Loan servicing core configuration"""

    # Database configuration
    database_url: str = "sqlite:///servicing.db"  # memory://, sqlite:///path, postgresql://...

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Identity provider (verifies bearer tokens issued externally)
    jwt_secret: str = Field(..., min_length=32)
    jwt_algorithm: str = "HS256"
    jwt_audience: Optional[str] = None

    # Request integrity
    csrf_secret: str = Field(..., min_length=32)

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Rate limiting
    enable_rate_limiting: bool = True
    redis_url: str = ""  # Empty = single-process in-memory counters
    rate_limit_prefix: str = "ratelimit"

    # Organization settings cache
    org_config_ttl_seconds: int = 60

    # Calendar used for "today" in payoff quotes
    organization_timezone: str = "UTC"

    class Config:
        env_prefix = "SERVICING_"
        env_file = ".env"
        case_sensitive = False


def load_config(**overrides) -> ServicingConfig:
    """
    Build configuration from the environment.

    Raises pydantic.ValidationError when a required secret is missing,
    which aborts process startup.
    """
    return ServicingConfig(**overrides)
