# procureflow/config.py
from __future__ import annotations

import os

from pydantic import BaseModel

# Load .env locally (safe in prod too)
try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() not in {"0", "false", "no", ""}


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


# -------------------
# Config (env-driven)
# -------------------
class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./procureflow.db")

    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    jwt_alg: str = os.getenv("JWT_ALG", "HS256")
    jwt_expire_minutes: int = _int("JWT_EXPIRE_MIN", 1440)  # default 24h

    llm_enabled: bool = _flag("LLM_ENABLED", "0")
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "").strip()
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

    currency_default: str = os.getenv("CURRENCY", "USD")

    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_json: bool = _flag("LOG_JSON", "1")


settings = Settings()


def currency_symbol(code: str | None = None) -> str:
    cur = (code or settings.currency_default or "USD").upper()
    return {"USD": "$", "GBP": "£", "EUR": "€"}.get(cur, "")
