"""Application configuration, read from the environment (and backend .env).

Generation parameters are not global: they travel as an explicit
GenerationSettings object to every generation call. Settings only supplies
the server-side defaults for requests that do not override them.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from loom.models import DAY_MS, GenerationSettings

ENV_FILE = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseModel):
    db_path: str = "loom.db"
    default_provider: str = "anthropic"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:5173"])
    retention_days: int = 7
    host: str = "127.0.0.1"
    port: int = 8000
    generation: GenerationSettings = Field(default_factory=GenerationSettings)

    @classmethod
    def from_env(cls, env_file: Path | None = ENV_FILE) -> "Settings":
        """Load .env (if present) and build settings from LOOM_* variables."""
        if env_file is not None:
            load_dotenv(env_file)

        generation = GenerationSettings()
        overrides: dict = {}
        if model := os.environ.get("LOOM_MODEL"):
            overrides["model"] = model
        if "LOOM_SYSTEM_PROMPT" in os.environ:
            overrides["system_prompt"] = os.environ["LOOM_SYSTEM_PROMPT"] or None
        if max_tokens := os.environ.get("LOOM_MAX_TOKENS"):
            overrides["max_tokens"] = int(max_tokens)
        if temperature := os.environ.get("LOOM_TEMPERATURE"):
            overrides["temperature"] = float(temperature)
        if thinking := os.environ.get("LOOM_EXTENDED_THINKING"):
            overrides["extended_thinking"] = thinking.lower() in ("1", "true", "yes")
        if budget := os.environ.get("LOOM_THINKING_BUDGET"):
            overrides["thinking_budget"] = int(budget)
        if overrides:
            generation = generation.model_copy(update=overrides)

        settings = cls(generation=generation)
        if db_path := os.environ.get("LOOM_DB_PATH"):
            settings.db_path = db_path
        if provider := os.environ.get("LOOM_PROVIDER"):
            settings.default_provider = provider
        if origins := os.environ.get("LOOM_CORS_ORIGINS"):
            settings.cors_origins = [o.strip() for o in origins.split(",") if o.strip()]
        if retention := os.environ.get("LOOM_RETENTION_DAYS"):
            settings.retention_days = int(retention)
        if host := os.environ.get("LOOM_HOST"):
            settings.host = host
        if port := os.environ.get("LOOM_PORT"):
            settings.port = int(port)
        return settings

    @property
    def retention_ms(self) -> int:
        return self.retention_days * DAY_MS
