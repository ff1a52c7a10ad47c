from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_NAME: str = "FastFare Parcel API"
    # Comma-separated origins for CORS. If empty, every origin is allowed.
    CORS_ORIGINS: str = ""
    PORT: int = 5000
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "parcelDB"

    # Stripe secret key
    PAYMENT_GATEWAY_KEY: str = ""
    PAYMENT_CURRENCY: str = "usd"

    # Path to the Firebase service account JSON used to verify ID tokens
    FIREBASE_CREDENTIALS: str = "firebase_admin_key.json"

    @property
    def cors_origins(self) -> list[str]:
        origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        return origins or ["*"]


settings = Settings()
