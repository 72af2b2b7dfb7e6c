"""
SOA Reconciliation Core - Configuration Management

Centralized configuration for environment variables, CORS, and matching policy.
This module ensures:
- No hardcoded secrets
- Matching tolerances and auto-confirm policy are explicit and testable
- Environment-specific settings (dev/staging/prod)
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="Async SQLAlchemy URL, e.g. postgresql+asyncpg://..."
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="soa_reconciliation")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="")
    DB_POOL_SIZE: int = Field(default=5)
    DB_MAX_OVERFLOW: int = Field(default=10)

    # ==================== INTERNAL AUTH ====================
    INTERNAL_API_KEY: str = Field(
        default="",
        description="Primary API key for service-to-service calls"
    )
    INTERNAL_API_KEYS: str = Field(
        default="",
        description="Comma-separated additional keys (for rotation)"
    )

    # ==================== MATCHING ====================
    SOA_AMOUNT_EPSILON: float = Field(
        default=0.005,
        description="Absolute amount difference still treated as equal in the deterministic pass"
    )
    SOA_AMOUNT_TOLERANCE_PCT: float = Field(
        default=0.01,
        description="Relative amount tolerance for the probabilistic pass (0.01 = 1%)"
    )
    SOA_AMOUNT_TOLERANCE_ABS: float = Field(
        default=0.0,
        description="Absolute amount tolerance for the probabilistic pass; the larger of the two applies"
    )
    SOA_ALLOW_PARTIAL_MATCHES: bool = Field(
        default=False,
        description="Propose partial-settlement matches (statement amount below the invoice) when nothing else fits"
    )
    SOA_PARTIAL_CONFIDENCE: float = Field(
        default=0.75,
        description="Confidence given to partial-settlement matches, capped by the probabilistic ceiling"
    )
    SOA_PROBABILISTIC_CEILING: float = Field(
        default=0.85,
        description="Upper bound for probabilistic confidence; must stay below 1.0"
    )
    SOA_MIN_CONTAINMENT_LENGTH: int = Field(
        default=3,
        description="Shortest normalized document number allowed in a containment match"
    )
    SOA_DATE_WINDOW_DAYS: int = Field(
        default=30,
        description="Date distance at which date proximity scores zero"
    )
    SOA_AUTO_CONFIRM_EXACT_MATCHES: bool = Field(
        default=True,
        description="Confirm system-created exact matches immediately instead of leaving them proposed"
    )
    SOA_LOOKUP_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="Timeout for a single candidate lookup"
    )
    SOA_CANDIDATE_LIMIT: int = Field(
        default=200,
        description="Maximum ledger invoices returned per line lookup"
    )

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="SOA Reconciliation API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list.

        Development also allows the usual localhost ports.
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
        ]

        all_origins = set(origins)
        if not self.is_production:
            all_origins.update(dev_origins)

        return sorted(all_origins)

    @property
    def internal_api_keys(self) -> List[str]:
        keys = []
        if self.INTERNAL_API_KEY:
            keys.append(self.INTERNAL_API_KEY.strip())
        if self.INTERNAL_API_KEYS:
            keys.extend(k.strip() for k in self.INTERNAL_API_KEYS.split(",") if k.strip())
        return keys

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL and not self.POSTGRES_HOST:
            errors.append("DATABASE_URL or POSTGRES_HOST is required")

        if not self.internal_api_keys:
            errors.append("INTERNAL_API_KEY is required")

        if not 0 < self.SOA_PROBABILISTIC_CEILING < 1:
            errors.append("SOA_PROBABILISTIC_CEILING must be between 0 and 1 (exclusive)")

        if not 0 <= self.SOA_AMOUNT_TOLERANCE_PCT < 1:
            errors.append("SOA_AMOUNT_TOLERANCE_PCT must be at least 0 and below 1")

        if self.SOA_AMOUNT_TOLERANCE_ABS < 0:
            errors.append("SOA_AMOUNT_TOLERANCE_ABS cannot be negative")

        if not 0 < self.SOA_PARTIAL_CONFIDENCE < 1:
            errors.append("SOA_PARTIAL_CONFIDENCE must be between 0 and 1 (exclusive)")

        if self.is_production:
            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # Build from components if DATABASE_URL not set
        if self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD:
            return (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )

        raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Auto-confirm exact matches: {settings.SOA_AUTO_CONFIRM_EXACT_MATCHES}")
    logger.info(f"Partial-settlement matches: {settings.SOA_ALLOW_PARTIAL_MATCHES}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== CORS CONFIGURATION ====================

def get_cors_config() -> dict:
    """
    Get CORS middleware configuration.

    Returns configuration dict for CORSMiddleware.
    """
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": [
            "Content-Type",
            "Accept",
            "Origin",
            "X-Request-ID",
            "X-Internal-Api-Key",
            "X-Vendor-Id",
            "X-Company-Id",
            "X-Actor-Id",
            "X-Actor-Capability",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,  # Cache preflight for 10 minutes
    }


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment() -> dict:
    """
    Validate all required environment variables.

    Returns a status dict with validation results.
    """
    settings = get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
    }

    if not settings.SENTRY_DSN:
        status["warnings"].append("Error tracking disabled")

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(errors)
        status["valid"] = False

    return status
