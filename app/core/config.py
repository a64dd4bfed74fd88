from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "local"
    APP_NAME: str = "Rainbow Paws API"
    LOG_LEVEL: str = "INFO"
    # Comma-separated origins for CORS (e.g. https://rainbowpaws.ph,https://admin.rainbowpaws.ph). If empty, uses localhost defaults.
    CORS_ORIGINS: str = ""

    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24
    JWT_ISSUER: str = "rainbow-paws"
    JWT_AUDIENCE: str = "rainbow-paws-users"
    # Accept "<userId>_<accountType>" tokens issued by older clients. Turn off once they are gone.
    ALLOW_LEGACY_TOKENS: bool = True

    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="after")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Render and others give postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v and v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[11:]
        return v
    REDIS_URL: str = "redis://localhost:6379/0"

    # memory = single process (dev/tests), redis = pub/sub fan-out across API instances
    REALTIME_BACKEND: str = "memory"
    SSE_PING_SECONDS: int = 30

    EMAIL_ENABLED: bool = True
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 25
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = "no-reply@rainbowpaws.local"

    CLIENT_BASE_URL: str = "http://localhost:3000"

    # PayMongo (GCash / card / Maya)
    PAYMONGO_API_BASE: str = "https://api.paymongo.com/v1"
    PAYMONGO_SECRET_KEY: str = ""
    PAYMONGO_WEBHOOK_SECRET: str = ""
    PAYMONGO_SANDBOX: bool = False  # If True, skip the real PayMongo call and return a mock succeeded refund

    # Shared secret for externally triggered queue processing (x-cron-secret header)
    CRON_SECRET: str = ""


settings = Settings()
