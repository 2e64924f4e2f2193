"""Configuration management utilities for the budget control tools.

Provides:
- A small ``Config`` base class with dict/JSON round-tripping
- ``AppConfig``: application settings loaded from environment variables
- Planning constants shared by the domain code and the API
"""

import json
import os
from pathlib import Path
from typing import Any, Dict


# ── Planning constants ───────────────────────────────────────────────────────

BUDGET_STATUSES = ("draft", "published", "closed")
EAC_METHODS = ("weighted_avg", "last_price", "manual")
MATCH_TYPES = ("exact_code", "fuzzy_name", "manual", "none")
SUPPLY_STATUSES = ("not_required", "required", "requested", "in_transit", "delivered")

# Unit assigned to conceptos created from the catalog (pieces)
DEFAULT_IMPORT_UNIT = "PZA"


class Config:
    """Base configuration class for organizing application settings."""

    def __init__(self):
        """Initialize configuration with default values."""
        pass

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary.

        Returns:
            Dictionary of all config attributes
        """
        return {k: v for k, v in self.__dict__.items() if not k.startswith("_")}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            Config instance with values from dictionary
        """
        config = cls()
        for key, value in data.items():
            setattr(config, key, value)
        return config

    def save_json(self, path: Path) -> None:
        """Save configuration to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)

    @classmethod
    def load_json(cls, path: Path) -> "Config":
        """Load configuration from JSON file.

        Raises:
            FileNotFoundError: If file doesn't exist
            json.JSONDecodeError: If file is not valid JSON
        """
        with open(path, "r") as f:
            data = json.load(f)
        return cls.from_dict(data)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


class AppConfig(Config):
    """Application-level configuration loaded from environment variables.

    All env vars have sensible defaults so the application works out of the
    box without any configuration.

    Environment variables:
        APP_DB_PATH: Path to the SQLite database file (default: budget_control.sqlite)
        APP_PORT: API server port (default: 8000)
        APP_HOST: API server bind address (default: 127.0.0.1)
        APP_LOG_FORMAT: Logging format, "text" or "json" (default: text)
        APP_CORS_ORIGINS: Comma-separated allowed origins (default: *)
        GLOBAL_SUBITEM_DEPARTMENTS: Comma-separated department codes/names whose
            global sub-items are offered under every line item (default: all)
        DEFAULT_FEE_PCT: Budget fee default for new budgets (default: 0.17)
        DEFAULT_WASTE_PCT: Budget waste default for new budgets (default: 0.05)
        DEFAULT_TAX_RATE: Tax rate for new budgets (default: 0.16)
        DEFAULT_CURRENCY: Currency for new budgets (default: MXN)
        VARIANCE_CAUTION_PCT: |variance| above this is "caution" (default: 0.05)
        VARIANCE_CRITICAL_PCT: |variance| above this is "critical" (default: 0.10)
        CATALOG_CACHE_TTL: Seconds catalog listings stay cached (default: 300)
    """

    def __init__(self) -> None:
        super().__init__()
        self.db_path = Path(os.getenv("APP_DB_PATH", "budget_control.sqlite"))
        self.api_port = int(os.getenv("APP_PORT", "8000"))
        self.api_host = os.getenv("APP_HOST", "127.0.0.1")
        self.log_format = os.getenv("APP_LOG_FORMAT", "text")
        raw_origins = os.getenv("APP_CORS_ORIGINS", "*")
        self.cors_origins: list[str] = (
            ["*"] if raw_origins == "*"
            else [o.strip() for o in raw_origins.split(",") if o.strip()]
        )
        self.global_subitem_departments: list[str] = _env_list("GLOBAL_SUBITEM_DEPARTMENTS")
        self.default_fee_pct = _env_float("DEFAULT_FEE_PCT", 0.17)
        self.default_waste_pct = _env_float("DEFAULT_WASTE_PCT", 0.05)
        self.default_tax_rate = _env_float("DEFAULT_TAX_RATE", 0.16)
        self.default_currency = os.getenv("DEFAULT_CURRENCY", "MXN")
        self.variance_caution_pct = _env_float("VARIANCE_CAUTION_PCT", 0.05)
        self.variance_critical_pct = _env_float("VARIANCE_CRITICAL_PCT", 0.10)
        self.catalog_cache_ttl = _env_float("CATALOG_CACHE_TTL", 300.0)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create an AppConfig instance populated from environment variables."""
        return cls()

    def allows_global_subitems(self, department_code: str, department_name: str = "") -> bool:
        """Return True if *department* may use global sub-items.

        An empty ``global_subitem_departments`` list enables every department.
        """
        if not self.global_subitem_departments:
            return True
        wanted = {d.casefold() for d in self.global_subitem_departments}
        return department_code.casefold() in wanted or department_name.casefold() in wanted
