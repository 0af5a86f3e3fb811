from __future__ import annotations

import json
import os
from dataclasses import dataclass, field


PAYMENT_MODES = ("sandbox", "live")
PARTIAL_REFUND_FEE_POLICIES = ("proportional", "fixed")


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_int(name: str, default: int, *, minimum: int = 0, maximum: int = 10_000_000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        value = float(raw) if raw else float(default)
    except Exception:
        value = float(default)
    return max(minimum, value)


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def _env_csv(name: str) -> tuple[str, ...]:
    raw = (os.getenv(name) or "").strip()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_shop_directory(name: str) -> dict:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except Exception:
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {str(k): dict(v) for k, v in parsed.items() if isinstance(v, dict)}


@dataclass(frozen=True)
class SettlementConfig:
    """Settlement policy and integration settings.

    Built once per process and handed to the engines at construction time, so
    nothing below the app factory reads the environment directly.
    """

    env: str = "dev"
    database_url: str = ""
    secret_key: str = "dev-secret"
    jwt_secret: str = "dev-secret-change-me"

    payment_mode: str = "sandbox"
    payments_provider: str = "mock"
    stripe_secret_key: str = ""
    webhook_secret: str = ""
    currency: str = "thb"

    platform_fee_bps: int = 1000
    auto_confirm_grace_hours: int = 72
    partial_refund_fee_policy: str = "proportional"

    auto_confirm_interval_seconds: int = 300
    payout_sweep_interval_seconds: int = 900
    payout_reconcile_interval_seconds: int = 600
    sweep_batch_limit: int = 500

    conflict_retry_attempts: int = 3
    conflict_retry_backoff_seconds: float = 0.05
    gateway_retry_attempts: int = 3
    gateway_retry_backoff_seconds: float = 0.5
    gateway_timeout_seconds: float = 25.0

    notifications_provider: str = "mock"
    notifications_async: bool = False
    notify_webhook_url: str = ""
    admin_notify_ids: tuple[str, ...] = ()

    catalog_provider: str = "static"
    catalog_base_url: str = ""
    shop_directory: dict = field(default_factory=dict)

    webhook_queue_enabled: bool = False
    cors_origins: tuple[str, ...] = ()

    @property
    def is_live(self) -> bool:
        return self.payment_mode == "live"

    def validate(self) -> None:
        if self.payment_mode not in PAYMENT_MODES:
            raise RuntimeError(f"PAYMENT_MODE must be one of {PAYMENT_MODES}, got {self.payment_mode!r}")
        if self.partial_refund_fee_policy not in PARTIAL_REFUND_FEE_POLICIES:
            raise RuntimeError(
                f"PARTIAL_REFUND_FEE_POLICY must be one of {PARTIAL_REFUND_FEE_POLICIES}, "
                f"got {self.partial_refund_fee_policy!r}"
            )
        if not 0 <= int(self.platform_fee_bps) <= 10000:
            raise RuntimeError("PLATFORM_FEE_BPS must be between 0 and 10000")
        if self.env in ("prod", "production"):
            if len(self.secret_key or "") < 16:
                raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
            if not self.database_url:
                raise RuntimeError("DATABASE_URL must be set in production")
        if self.is_live and self.payments_provider == "mock":
            raise RuntimeError("PAYMENTS_PROVIDER=mock cannot be used with PAYMENT_MODE=live")


def _normalize_database_url(url: str) -> str:
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def load_config() -> SettlementConfig:
    secret_key = _env_str("SECRET_KEY", "dev-secret")
    cfg = SettlementConfig(
        env=_env_str("KEYMARKET_ENV", "dev").lower(),
        database_url=_normalize_database_url(_env_str("DATABASE_URL") or _env_str("SQLALCHEMY_DATABASE_URI")),
        secret_key=secret_key,
        jwt_secret=_env_str("JWT_SECRET") or secret_key,
        payment_mode=_env_str("PAYMENT_MODE", "sandbox").lower(),
        payments_provider=_env_str("PAYMENTS_PROVIDER", "mock").lower(),
        stripe_secret_key=_env_str("STRIPE_SECRET_KEY"),
        webhook_secret=_env_str("PAYMENTS_WEBHOOK_SECRET"),
        currency=_env_str("DEFAULT_CURRENCY", "thb").lower(),
        platform_fee_bps=_env_int("PLATFORM_FEE_BPS", 1000, maximum=10000),
        auto_confirm_grace_hours=_env_int("AUTO_CONFIRM_GRACE_HOURS", 72, minimum=1, maximum=24 * 90),
        partial_refund_fee_policy=_env_str("PARTIAL_REFUND_FEE_POLICY", "proportional").lower(),
        auto_confirm_interval_seconds=_env_int("AUTO_CONFIRM_INTERVAL_SECONDS", 300, minimum=30),
        payout_sweep_interval_seconds=_env_int("PAYOUT_SWEEP_INTERVAL_SECONDS", 900, minimum=30),
        payout_reconcile_interval_seconds=_env_int("PAYOUT_RECONCILE_INTERVAL_SECONDS", 600, minimum=30),
        sweep_batch_limit=_env_int("SWEEP_BATCH_LIMIT", 500, minimum=1, maximum=5000),
        conflict_retry_attempts=_env_int("CONFLICT_RETRY_ATTEMPTS", 3, minimum=1, maximum=10),
        conflict_retry_backoff_seconds=_env_float("CONFLICT_RETRY_BACKOFF_SECONDS", 0.05),
        gateway_retry_attempts=_env_int("GATEWAY_RETRY_ATTEMPTS", 3, minimum=1, maximum=10),
        gateway_retry_backoff_seconds=_env_float("GATEWAY_RETRY_BACKOFF_SECONDS", 0.5),
        gateway_timeout_seconds=_env_float("GATEWAY_TIMEOUT_SECONDS", 25.0, minimum=1.0),
        notifications_provider=_env_str("NOTIFICATIONS_PROVIDER", "mock").lower(),
        notifications_async=_env_bool("NOTIFICATIONS_ASYNC", False),
        notify_webhook_url=_env_str("NOTIFY_WEBHOOK_URL"),
        admin_notify_ids=_env_csv("ADMIN_NOTIFY_IDS"),
        catalog_provider=_env_str("CATALOG_PROVIDER", "static").lower(),
        catalog_base_url=_env_str("CATALOG_BASE_URL"),
        shop_directory=_env_shop_directory("SHOP_DIRECTORY_JSON"),
        webhook_queue_enabled=_env_bool("PAYMENTS_WEBHOOK_QUEUE", False),
        cors_origins=_env_csv("CORS_ORIGINS"),
    )
    cfg.validate()
    return cfg
