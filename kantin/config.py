"""Runtime configuration for the app, read from the environment."""
import os
from typing import NamedTuple


class Settings(NamedTuple):
    database_url: str
    jwt_secret: str
    token_exp_seconds: int
    demo_password: str
    log_level: str


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./kantin.db"),
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret"),
        token_exp_seconds=int(os.getenv("TOKEN_EXP_SECONDS", str(60 * 60 * 24))),
        demo_password=os.getenv("DEMO_PASSWORD", "password123"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


settings = load_settings()


def configure(**overrides) -> Settings:
    """Replace selected settings (used by tests)."""
    global settings
    settings = settings._replace(**overrides)
    return settings


def get_settings() -> Settings:
    return settings
