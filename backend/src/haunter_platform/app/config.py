"""Application configuration via Pydantic Settings."""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel
from pydantic_settings import BaseSettings

# Resolve .env from backend/ regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class TierTerms(BaseModel):
    """What a search job service tier buys: delivery window, deposit and option count."""

    deadline_days: int
    deposit_amount: Decimal
    number_of_options: int = 3


def _default_tiers() -> dict[str, TierTerms]:
    return {
        "STANDARD": TierTerms(deadline_days=7, deposit_amount=Decimal("5000")),
        "PREMIUM": TierTerms(deadline_days=5, deposit_amount=Decimal("8000")),
        "URGENT": TierTerms(deadline_days=3, deposit_amount=Decimal("12000")),
    }


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./haunter_platform.db"

    # Identity tokens (issued by the identity provider, only verified here)
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Money
    currency: str = "KES"

    # Search job tiers
    service_tiers: dict[str, TierTerms] = _default_tiers()

    # Deadlines
    max_extension_hours: int = 72
    extension_grace_hours: int = 24
    expiry_sweep_interval_minutes: int = 5

    # Viewings
    viewing_duration_minutes: int = 60

    # Payment gateway
    gateway_max_attempts: int = 5

    # CORS / Frontend
    cors_origins: str = "http://localhost:3000"

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin.
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def tier_terms(self, tier: str) -> TierTerms:
        """Return the terms for a service tier name (``"PREMIUM"`` etc.)."""
        return self.service_tiers[tier]


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
