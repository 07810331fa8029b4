from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")


class InstitutionConfig(dict):
    """Dictionary-backed institution entry with attribute helpers."""

    def __init__(self, institution_id: str, name: str, code: str, logo: str, color: str):
        super().__init__(id=institution_id, name=name, code=code, logo=logo, color=color)

    @property
    def id(self) -> str:
        return self["id"]

    @property
    def name(self) -> str:
        return self.get("name", "")

    @property
    def code(self) -> str:
        return self.get("code", "")


def _catalogue(rows: List[tuple]) -> Dict[str, InstitutionConfig]:
    return {row[0]: InstitutionConfig(*row) for row in rows}


OPEN_FINANCE_INSTITUTIONS: Dict[str, InstitutionConfig] = _catalogue(
    [
        ("itau", "Itaú", "341", "/banks/itau.png", "#FF6B00"),
        ("bradesco", "Bradesco", "237", "/banks/bradesco.png", "#E30613"),
        ("bb", "Banco do Brasil", "001", "/banks/bb.png", "#FFDE00"),
        ("nubank", "Nubank", "260", "/banks/nubank.png", "#8A05BE"),
        ("santander", "Santander", "033", "/banks/santander.png", "#EC0000"),
        ("caixa", "Caixa Econômica Federal", "104", "/banks/caixa.png", "#0066B3"),
        ("xp", "XP Banking", "348", "/banks/xp.png", "#000000"),
        ("btg", "BTG Pactual", "208", "/banks/btg.png", "#1B1B1B"),
    ]
)

PLUGGY_INSTITUTIONS: Dict[str, InstitutionConfig] = _catalogue(
    [
        ("201", "Itaú", "341", "/banks/itau.png", "#FF6B00"),
        ("212", "Bradesco", "237", "/banks/bradesco.png", "#E30613"),
        ("208", "Banco do Brasil", "001", "/banks/bb.png", "#FFDE00"),
        ("280", "Nubank", "260", "/banks/nubank.png", "#8A05BE"),
        ("202", "Santander", "033", "/banks/santander.png", "#EC0000"),
        ("207", "Caixa Econômica Federal", "104", "/banks/caixa.png", "#0066B3"),
        ("239", "XP Banking", "348", "/banks/xp.png", "#000000"),
        ("213", "BTG Pactual", "208", "/banks/btg.png", "#1B1B1B"),
        ("600", "Sandbox", "600", "/banks/sandbox.png", "#48be9d"),
    ]
)

INSTITUTIONS: Dict[str, Dict[str, InstitutionConfig]] = {
    "open_finance": OPEN_FINANCE_INSTITUTIONS,
    "pluggy": PLUGGY_INSTITUTIONS,
}

# Days a freshly created link stays valid before the user must re-consent.
DEFAULT_LINK_VALIDITY_DAYS: Dict[str, int] = {
    "open_finance": 365,
    "pluggy": 180,
}


def _split_csv(value: Optional[str], default: List[str]) -> List[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    """Runtime settings shared across the backend application."""

    def __init__(self) -> None:
        self.title: str = "FinanBot API"
        self.version: str = "1.0.0"
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
        self.frontend_url: str = os.getenv("FRONTEND_URL", "http://localhost:3000")
        self.cors_origins: List[str] = _split_csv(
            os.getenv("CORS_ORIGINS"),
            [
                "http://localhost:3000",
                "http://localhost:5173",
                "http://127.0.0.1:5173",
            ],
        )
        self.api_cache_ttl: int = int(os.getenv("API_CACHE_TTL", "300"))
        self.api_cache_size: int = int(os.getenv("API_CACHE_SIZE", "100"))
        self.http_timeout: float = float(os.getenv("HTTP_TIMEOUT", "20"))
        self.sync_window_days: int = int(os.getenv("SYNC_WINDOW_DAYS", "90"))

        self.aggregator_provider: str = os.getenv("AGGREGATOR_PROVIDER", "pluggy").lower()

        self.open_finance_base_url: Optional[str] = os.getenv("OPEN_FINANCE_BASE_URL")
        self.open_finance_client_id: Optional[str] = os.getenv("OPEN_FINANCE_CLIENT_ID")
        self.open_finance_client_secret: Optional[str] = os.getenv("OPEN_FINANCE_CLIENT_SECRET")
        self.open_finance_redirect_uri: str = os.getenv(
            "OPEN_FINANCE_REDIRECT_URI", f"{self.frontend_url}/auth/callback"
        )

        self.pluggy_base_url: str = os.getenv("PLUGGY_BASE_URL", "https://api.pluggy.ai")
        self.pluggy_client_id: Optional[str] = os.getenv("PLUGGY_CLIENT_ID")
        self.pluggy_client_secret: Optional[str] = os.getenv("PLUGGY_CLIENT_SECRET")
        self.pluggy_webhook_secret: Optional[str] = os.getenv("PLUGGY_WEBHOOK_SECRET")

        self.jwt_secret: str = os.getenv("JWT_SECRET", "finanbot-development-secret-change-me")
        self.jwt_algorithm: str = "HS256"
        self.jwt_expires_minutes: int = int(os.getenv("JWT_EXPIRES_MINUTES", str(7 * 24 * 60)))

        self.openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
        self.openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.openai_max_tokens: int = int(os.getenv("OPENAI_MAX_TOKENS", "1000"))

    @property
    def institutions(self) -> Dict[str, InstitutionConfig]:
        return INSTITUTIONS.get(self.aggregator_provider, {})


settings = Settings()
