from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Chat service settings; environment variables win over .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # e.g. sqlite:///./roomchat.db
    DATABASE_URL: str

    LOG_LEVEL: str = "INFO"

    # Log every SQL statement the chat services emit
    SQL_ECHO: bool = False

    # Rooms per page in the room browser
    ROOMS_PAGE_SIZE: int = 10


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
