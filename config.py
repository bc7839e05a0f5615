from typing import Optional
from pydantic_settings import BaseSettings


class Settings (BaseSettings):
    database_url: Optional[str] = None
    database_username: str = "postgres"
    database_password: str = "postgres"
    database_hostname: str = "localhost"
    database_portname: str = "5432"
    database_name: str = "laine"

    secret_key: str = "change-me"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30
    refresh_token_expire_days: int = 7

    nexhealth_api_key: Optional[str] = None
    nexhealth_base_url: str = "https://nexhealth.info"
    nexhealth_webhook_secret: Optional[str] = None
    nexhealth_webhook_endpoint_id: Optional[str] = None

    vapi_api_key: Optional[str] = None
    vapi_base_url: str = "https://api.vapi.ai"
    vapi_webhook_secret: Optional[str] = None

    app_base_url: str = "http://localhost:8000"

    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0

    rate_limit_enabled: bool = True
    cors_origins: str = "*"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def sqlalchemy_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f'postgresql://{self.database_username}:{self.database_password}@{self.database_hostname}:{self.database_portname}/{self.database_name}'


settings = Settings()  # type: ignore
