from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./rental_engine.db"
    # Tokens are issued by the auth service; this service only verifies them
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"

    REDIS_URL: str = "redis://localhost:6379/0"

    # --- Pricing ---
    BOOKING_FEE_RATE: float = 0.10

    # --- Milestones ---
    # "legacy": plain float division, remainder is never redistributed.
    # "absorb_remainder": cents rounding, last installment takes the remainder.
    INSTALLMENT_ROUNDING: str = "legacy"
    MILESTONE_SUM_TOLERANCE: float = 0.01

    # --- Payment links ---
    PAYMENT_LINK_TTL_DAYS: int = 7
    PAYMENT_LINK_BASE_URL: str = "http://localhost:8000/payment-links"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
