"""
Configuration module for the studio booking backend.
Loads environment variables and provides typed configuration.
"""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file
env_path = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Supabase (service role key, bypasses RLS)
    supabase_url: str = ""
    supabase_key: str = ""

    # Stripe
    stripe_secret_key: str = ""
    stripe_publishable_key: str = ""
    stripe_webhook_secret: Optional[str] = (
        None  # Required in production for webhook verification
    )
    stripe_timeout_seconds: float = 10.0
    currency: str = "eur"

    # Email (Resend)
    resend_api_key: Optional[str] = None
    from_email: str = "contact@example.com"
    brand_name: str = "Wellness Studio"

    # Booking
    timezone: str = "Europe/Luxembourg"
    booking_buffer_minutes: int = 15
    default_slot_interval_minutes: int = 15

    # Gift cards
    gift_card_auto_redeem: bool = False  # Move to "redeemed" at zero balance
    gift_card_min_amount: float = 10.0
    gift_card_max_amount: float = 500.0

    # Payment sweep
    sweep_interval_minutes: int = 15
    sweep_lookback_hours: int = 48
    abandon_after_hours: int = 24

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    environment: str = "development"  # development, staging, production

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def validate_all_required(self) -> None:
        """
        Validate that all required settings are present.

        Raises:
            ValueError: If required fields are missing or invalid
        """
        required_fields = [
            "supabase_url",
            "supabase_key",
            "stripe_secret_key",
            "stripe_publishable_key",
        ]
        if self.is_production:
            required_fields += ["stripe_webhook_secret", "resend_api_key"]

        missing = []
        for field in required_fields:
            value = getattr(self, field, None)

            if not value:
                missing.append(field)
                continue

            # Placeholder values copied from an example .env
            if str(value).lower().startswith("your_"):
                missing.append(field)
                continue

        if self.is_production and self.stripe_secret_key.startswith("sk_test_"):
            missing.append("stripe_secret_key (test key in production)")

        if missing:
            raise ValueError(
                f"Missing or invalid required configuration: "
                f"{', '.join(missing)}. "
                f"Please check your .env file and ensure all required "
                f"values are set."
            )


# Global settings instance
settings = Settings()
