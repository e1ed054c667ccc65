"""
Configuration Loader (``commission_config.loader``).

Responsibility
--------------
Loads YAML files, layers overrides on the packaged defaults, applies
``COMMISSION_*`` environment variables and parses the result into the
frozen ``commission_config.schema`` dataclasses.  Runtime callers use
``commission_config.get_active_config()`` instead of calling this directly.

Failure modes
-------------
* Missing override file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid value  -> ``ConfigurationError`` naming the offending key.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Callable

import yaml

from commission_config.schema import (
    LedgerCapabilities,
    ReceiptStorageSettings,
    RetryPolicy,
    SettlementConfig,
    StripeSettings,
)
from commission_kernel.db.types import validate_currency
from commission_kernel.exceptions import ConfigurationError, InvalidCurrencyError

PREFERRED_METHODS = ("balance_debit", "card_fallback")
ALLOCATION_HINT_METHODS = ("fifo", "prorata")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` onto ``base`` (override wins)."""
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# env var -> (section, key, parser)
ENV_OVERRIDES: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "COMMISSION_PREFERRED_METHOD": ("collection", "preferred_method", str),
    "COMMISSION_CARD_CONFIRMATION_WINDOW_HOURS": (
        "collection", "card_confirmation_window_hours", int,
    ),
    "COMMISSION_DEFAULT_CURRENCY": ("debts", "default_currency", str),
    "COMMISSION_DUE_DAYS": ("debts", "due_days", int),
    "COMMISSION_ALLOCATION_HINT_METHOD": (
        "manual_payments", "allocation_hint_method", str,
    ),
    "COMMISSION_RETRY_MAX_ATTEMPTS": ("retry", "max_attempts", int),
    "COMMISSION_STRIPE_API_KEY": ("stripe", "api_key", str),
    "COMMISSION_STRIPE_PLATFORM_ACCOUNT_ID": ("stripe", "platform_account_id", str),
    "COMMISSION_RECEIPTS_BUCKET": ("receipts", "bucket", str),
    "COMMISSION_RECEIPTS_ENDPOINT_URL": ("receipts", "endpoint_url", str),
    "COMMISSION_RECEIPTS_ACCESS_KEY_ID": ("receipts", "access_key_id", str),
    "COMMISSION_RECEIPTS_SECRET_ACCESS_KEY": ("receipts", "secret_access_key", str),
    "COMMISSION_FINANCE_ALERT_RECIPIENTS": (
        "notifications", "finance_alert_recipients", _csv,
    ),
}


def apply_env_overrides(
    data: Mapping[str, Any],
    env: Mapping[str, str],
) -> dict[str, Any]:
    """Layer recognised ``COMMISSION_*`` variables onto ``data``."""
    result = merge_dicts(data, {})
    for var, (section, key, parser) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = parser(raw)
        except ValueError as exc:
            raise ConfigurationError(var, f"cannot parse {raw!r}: {exc}") from exc
        result[section] = merge_dicts(result.get(section) or {}, {key: value})
    return result


def _require_positive(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(key, f"must be a positive integer, got {value!r}")
    return value


def _require_choice(key: str, value: Any, choices: tuple[str, ...]) -> str:
    if value not in choices:
        raise ConfigurationError(key, f"must be one of {choices}, got {value!r}")
    return value


def parse_config(
    data: Mapping[str, Any],
    capabilities: LedgerCapabilities | None = None,
) -> SettlementConfig:
    """
    Parse a merged configuration mapping into a ``SettlementConfig``.

    Raises:
        ConfigurationError: if any value is missing or invalid.
    """
    collection = data.get("collection") or {}
    debts = data.get("debts") or {}
    manual = data.get("manual_payments") or {}
    retry = data.get("retry") or {}
    stripe = data.get("stripe") or {}
    receipts = data.get("receipts") or {}
    notifications = data.get("notifications") or {}

    try:
        currency = validate_currency(debts.get("default_currency", "CLP"))
    except InvalidCurrencyError as exc:
        raise ConfigurationError("debts.default_currency", str(exc)) from exc

    due_days = debts.get("due_days", 3)
    if isinstance(due_days, bool) or not isinstance(due_days, int) or due_days < 0:
        raise ConfigurationError(
            "debts.due_days", f"must be a non-negative integer, got {due_days!r}",
        )

    return SettlementConfig(
        preferred_method=_require_choice(
            "collection.preferred_method",
            collection.get("preferred_method", "balance_debit"),
            PREFERRED_METHODS,
        ),
        default_currency=currency,
        due_days=due_days,
        allocation_hint_method=_require_choice(
            "manual_payments.allocation_hint_method",
            manual.get("allocation_hint_method", "fifo"),
            ALLOCATION_HINT_METHODS,
        ),
        card_confirmation_window_hours=_require_positive(
            "collection.card_confirmation_window_hours",
            collection.get("card_confirmation_window_hours", 48),
        ),
        retry=RetryPolicy(
            max_attempts=_require_positive(
                "retry.max_attempts", retry.get("max_attempts", 3),
            ),
            initial_wait_seconds=float(retry.get("initial_wait_seconds", 0.5)),
            max_wait_seconds=float(retry.get("max_wait_seconds", 8.0)),
            jitter_seconds=float(retry.get("jitter_seconds", 0.5)),
        ),
        stripe=StripeSettings(
            api_key=stripe.get("api_key"),
            platform_account_id=stripe.get("platform_account_id"),
            api_version=stripe.get("api_version"),
        ),
        receipts=ReceiptStorageSettings(
            bucket=receipts.get("bucket"),
            endpoint_url=receipts.get("endpoint_url"),
            region=receipts.get("region") or "auto",
            access_key_id=receipts.get("access_key_id"),
            secret_access_key=receipts.get("secret_access_key"),
            presign_expires_seconds=_require_positive(
                "receipts.presign_expires_seconds",
                receipts.get("presign_expires_seconds", 3600),
            ),
        ),
        finance_alert_recipients=tuple(
            notifications.get("finance_alert_recipients") or ()
        ),
        capabilities=capabilities or LedgerCapabilities(),
    )
