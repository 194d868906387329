from __future__ import annotations

import hashlib
import logging
import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

load_dotenv()

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    secret_key: str = Field(default="CHANGE_ME", alias="SECRET_KEY")
    algorithm: str = "HS512"
    token_max_age_seconds: Optional[int] = None

    database_url: str = "sqlite+aiosqlite:///./app.db"
    origin: str = ""
    card_image_base: str = "/static/cards"

    send_timeout_seconds: float = 5.0
    shuffle_seed: Optional[int] = None
    max_rounds: Optional[int] = None
    keep_finished_games: int = 50
    persist_state: bool = True
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    def allowed_origins(self) -> List[str]:
        """
        Splits ORIGIN by commas, e.g. "https://cards.example, https://www.cards.example".
        The local dev frontend is always allowed.
        """
        return ["http://localhost:8080"] + [x.strip() for x in self.origin.split(",") if x.strip()]

    def masked_secret(self) -> str:
        if not self.secret_key:
            return "<empty>"
        if len(self.secret_key) <= 4:
            return "***"
        return f"{self.secret_key[:2]}***{self.secret_key[-2:]}"

    def log_status(self) -> None:
        env_name = os.getenv("ENV", "unknown")
        secret_hash = hashlib.sha256(self.secret_key.encode()).hexdigest()[:8]
        logger.info(
            "Auth settings: secret_key=%s (hash=%s), algorithm=%s, max_age=%s, env=%s",
            self.masked_secret(),
            secret_hash,
            self.algorithm,
            self.token_max_age_seconds,
            env_name,
        )


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()
    settings.log_status()
    return settings


settings = get_settings()
