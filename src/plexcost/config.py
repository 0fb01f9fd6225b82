"""
Configuration for plexcost.
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from .history import DEFAULT_WATCHED_THRESHOLD
from .pricing import BACKOFF_SECONDS, DISCOVER_API_BASE, MAX_ATTEMPTS


@dataclass
class TautulliConfig:
    """Tautulli (watch history) connection configuration."""

    host: str = "127.0.0.1"
    port: str = "80"
    api_key: str = ""
    watched_threshold: float = DEFAULT_WATCHED_THRESHOLD
    timeout_seconds: float = 30.0

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass
class PricingConfig:
    """Plex Discover pricing API configuration."""

    plex_token: str = ""
    base_url: str = DISCOVER_API_BASE
    timeout_seconds: float = 30.0
    max_attempts: int = MAX_ATTEMPTS
    backoff_seconds: tuple[float, ...] = BACKOFF_SECONDS


@dataclass
class PlexCostConfig:
    """Complete plexcost configuration."""

    hours_between_runs: float = 6
    base_subscription_price: Decimal = Decimal("13.99")
    data_json_path: Path = field(default_factory=lambda: Path("data.json"))
    savings_json_path: Path = field(default_factory=lambda: Path("savings.json"))
    history_days: int = 2
    debug: bool = False

    tautulli: TautulliConfig = field(default_factory=TautulliConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlexCostConfig":
        """Create config from a dictionary (e.g., from YAML)."""
        config = cls()

        if "hours_between_runs" in data:
            config.hours_between_runs = float(data["hours_between_runs"])
        if "base_subscription_price" in data:
            config.base_subscription_price = Decimal(str(data["base_subscription_price"]))
        if "data_json_path" in data:
            config.data_json_path = Path(data["data_json_path"])
        if "savings_json_path" in data:
            config.savings_json_path = Path(data["savings_json_path"])
        if "history_days" in data:
            config.history_days = int(data["history_days"])
        if "debug" in data:
            config.debug = bool(data["debug"])

        if "tautulli" in data:
            t = data["tautulli"] or {}
            config.tautulli = TautulliConfig(
                host=str(t.get("host", "127.0.0.1")),
                port=str(t.get("port", "80")),
                api_key=t.get("api_key", ""),
                watched_threshold=float(t.get("watched_threshold", DEFAULT_WATCHED_THRESHOLD)),
                timeout_seconds=float(t.get("timeout_seconds", 30.0)),
            )

        if "pricing" in data:
            p = data["pricing"] or {}
            config.pricing = PricingConfig(
                plex_token=p.get("plex_token", ""),
                base_url=p.get("base_url", DISCOVER_API_BASE),
                timeout_seconds=float(p.get("timeout_seconds", 30.0)),
                max_attempts=int(p.get("max_attempts", MAX_ATTEMPTS)),
                backoff_seconds=tuple(
                    float(s) for s in p.get("backoff_seconds", BACKOFF_SECONDS)
                ),
            )

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "PlexCostConfig":
        """Load config from a YAML file; a missing file gives the defaults."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    def apply_env(self, environ: Mapping[str, str] | None = None) -> "PlexCostConfig":
        """Override settings from environment variables.

        Unparseable numeric values are ignored and the current value kept.
        """
        env = os.environ if environ is None else environ

        hours = env.get("HOURS_BETWEEN_RUNS")
        if hours:
            try:
                self.hours_between_runs = float(hours)
            except ValueError:
                pass

        price = env.get("BASE_SUBSCRIPTION_PRICE")
        if price:
            try:
                self.base_subscription_price = Decimal(price)
            except InvalidOperation:
                pass

        days = env.get("HISTORY_DAYS")
        if days:
            try:
                self.history_days = int(days)
            except ValueError:
                pass

        if env.get("DATA_JSON_PATH"):
            self.data_json_path = Path(env["DATA_JSON_PATH"])
        if env.get("SAVINGS_JSON_PATH"):
            self.savings_json_path = Path(env["SAVINGS_JSON_PATH"])
        if env.get("IP_ADDRESS"):
            self.tautulli.host = env["IP_ADDRESS"]
        if env.get("PORT"):
            self.tautulli.port = env["PORT"]
        if env.get("API_KEY"):
            self.tautulli.api_key = env["API_KEY"]
        if env.get("PLEX_TOKEN"):
            self.pricing.plex_token = env["PLEX_TOKEN"]
        if env.get("DEBUG"):
            self.debug = env["DEBUG"].strip().lower() == "true"

        return self

    def validate(self) -> list[str]:
        """Return a list of configuration problems (empty when usable)."""
        problems = []
        if not self.tautulli.api_key:
            problems.append("API_KEY (tautulli.api_key) is required")
        if not self.pricing.plex_token:
            problems.append("PLEX_TOKEN (pricing.plex_token) is required")
        if self.hours_between_runs <= 0:
            problems.append("hours_between_runs must be > 0")
        if not self.base_subscription_price.is_finite() or self.base_subscription_price < 0:
            problems.append("base_subscription_price must be >= 0")
        if self.history_days < 1:
            problems.append("history_days must be >= 1")
        if self.pricing.max_attempts < 1:
            problems.append("pricing.max_attempts must be >= 1")
        elif len(self.pricing.backoff_seconds) < self.pricing.max_attempts - 1:
            problems.append("pricing.backoff_seconds needs one wait per retry")
        return problems

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for logging. Credentials are left out."""
        return {
            "hours_between_runs": self.hours_between_runs,
            "base_subscription_price": str(self.base_subscription_price),
            "data_json_path": str(self.data_json_path),
            "savings_json_path": str(self.savings_json_path),
            "history_days": self.history_days,
            "debug": self.debug,
            "tautulli": {
                "host": self.tautulli.host,
                "port": self.tautulli.port,
                "watched_threshold": self.tautulli.watched_threshold,
                "timeout_seconds": self.tautulli.timeout_seconds,
            },
            "pricing": {
                "base_url": self.pricing.base_url,
                "timeout_seconds": self.pricing.timeout_seconds,
                "max_attempts": self.pricing.max_attempts,
                "backoff_seconds": list(self.pricing.backoff_seconds),
            },
        }
