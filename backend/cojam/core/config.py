from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database
    database_url: str

    # JWT (bearer header or cookie)
    JWT_SECRET: str
    JWT_ISS: str = "cojam-api"
    JWT_AUD: str = "cojam-web"
    ACCESS_TOKEN_TTL_SECONDS: int = 60 * 60 * 24 * 7  # 7 days
    COOKIE_NAME: str = "access_token"

    CORS_ORIGINS: str = "http://localhost:3000"

    # Membership policy
    HOST_LEAVE_ENDS_SESSION: bool = False
    DEFAULT_MAX_PARTICIPANTS: int = 4

    # scheduled -> ready flip
    SCHEDULER_ENABLED: bool = False
    SCHEDULER_INTERVAL_SECONDS: int = 60

    LOG_LEVEL: str = "INFO"

    def cors_origins(self) -> list[str]:
        raw = (self.CORS_ORIGINS or "").strip()
        if not raw:
            return []
        return [x.strip() for x in raw.split(",") if x.strip()]


settings = Settings()
