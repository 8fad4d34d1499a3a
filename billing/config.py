from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path


def _parse_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


def _parse_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default).strip()
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"{name} must be a number") from exc
    if not value.is_finite() or value < 0:
        raise ValueError(f"{name} must be a non-negative number")
    return value


def _choice(name: str, default: str, allowed: tuple[str, ...]) -> str:
    value = os.getenv(name, default).strip().lower()
    if value not in allowed:
        raise ValueError(f"{name} must be one of: {', '.join(allowed)}")
    return value


@dataclass(frozen=True)
class Settings:
    store_backend: str = "memory"
    sqlite_path: str = "data/billing.db"
    api_base_url: str | None = None
    api_token: str | None = None
    api_timeout_seconds: int = 30
    default_net_terms_days: int = 30
    default_payment_terms: str = "Net 30"
    default_tax_rate: Decimal = Decimal("9.25")
    estimate_valid_days: int = 30
    rounding_mode: str = "half_up"
    discount_policy: str = "clamp"
    match_policy: str = "fallback"
    stock_cas_max_attempts: int = 5
    movement_journal_path: str | None = "logs/stock_movements.jsonl"
    metrics_path: str = "logs/metrics.jsonl"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        store_backend = _choice("STORE_BACKEND", "memory", ("memory", "sqlite", "http"))

        api_base_url = os.getenv("API_BASE_URL")
        api_token = os.getenv("API_TOKEN")
        if store_backend == "http":
            missing = [
                key
                for key, value in {"API_BASE_URL": api_base_url, "API_TOKEN": api_token}.items()
                if not value or not value.strip()
            ]
            if missing:
                raise ValueError(
                    f"Missing required environment variable(s) for STORE_BACKEND=http: {', '.join(missing)}"
                )

        net_terms = _parse_int("DEFAULT_NET_TERMS_DAYS", 30)
        journal_path = os.getenv("MOVEMENT_JOURNAL_PATH", "logs/stock_movements.jsonl").strip()

        return cls(
            store_backend=store_backend,
            sqlite_path=os.getenv("SQLITE_PATH", "data/billing.db"),
            api_base_url=api_base_url.strip().rstrip("/") if api_base_url else None,
            api_token=api_token.strip() if api_token else None,
            api_timeout_seconds=_parse_int("API_TIMEOUT_SECONDS", 30, minimum=1),
            default_net_terms_days=net_terms,
            default_payment_terms=os.getenv("DEFAULT_PAYMENT_TERMS", f"Net {net_terms}"),
            default_tax_rate=_parse_decimal("DEFAULT_TAX_RATE", "9.25"),
            estimate_valid_days=_parse_int("ESTIMATE_VALID_DAYS", 30, minimum=1),
            rounding_mode=_choice("ROUNDING_MODE", "half_up", ("half_up", "half_even")),
            discount_policy=_choice("DISCOUNT_POLICY", "clamp", ("clamp", "reject")),
            match_policy=_choice("MATCH_POLICY", "fallback", ("fallback", "explicit")),
            stock_cas_max_attempts=_parse_int("STOCK_CAS_MAX_ATTEMPTS", 5, minimum=1),
            movement_journal_path=journal_path or None,
            metrics_path=os.getenv("METRICS_PATH", "logs/metrics.jsonl"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def load_dotenv(path: str | Path = ".env") -> None:
    env_path = Path(path)
    if not env_path.exists():
        return
    for line in env_path.read_text(encoding="utf-8").splitlines():
        entry = line.strip()
        if not entry or entry.startswith("#") or "=" not in entry:
            continue
        key, value = entry.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        os.environ.setdefault(key, value)
