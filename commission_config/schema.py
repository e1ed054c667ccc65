"""
SettlementConfig schema.

The runtime configuration artifact: a frozen dataclass tree produced by
``commission_config.get_active_config()`` and held by services for their
whole lifetime.  Nothing here is mutated after load; a schema change
detected at startup is carried in ``LedgerCapabilities`` rather than in a
process-wide flag.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff for transient payment-processor failures."""

    max_attempts: int = 3
    initial_wait_seconds: float = 0.5
    max_wait_seconds: float = 8.0
    jitter_seconds: float = 0.5


@dataclass(frozen=True)
class StripeSettings:
    """Payment processor credentials and platform account."""

    api_key: str | None = None
    platform_account_id: str | None = None
    api_version: str | None = None


@dataclass(frozen=True)
class ReceiptStorageSettings:
    """Object storage for manual-payment receipts."""

    bucket: str | None = None
    endpoint_url: str | None = None
    region: str = "auto"
    access_key_id: str | None = None
    secret_access_key: str | None = None
    presign_expires_seconds: int = 3600


@dataclass(frozen=True)
class LedgerCapabilities:
    """
    Optional schema features found by the startup probe.

    ``debt_reference_sync`` is False when commission_debts has no
    external_reference column; debt-side reference writes are then skipped
    and the settlement ledger alone carries the reference.
    """

    debt_reference_sync: bool = True


@dataclass(frozen=True)
class SettlementConfig:
    """Complete configuration for the settlement engine."""

    preferred_method: str = "balance_debit"
    default_currency: str = "CLP"
    due_days: int = 3
    allocation_hint_method: str = "fifo"
    card_confirmation_window_hours: int = 48
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    stripe: StripeSettings = field(default_factory=StripeSettings)
    receipts: ReceiptStorageSettings = field(default_factory=ReceiptStorageSettings)
    finance_alert_recipients: tuple[str, ...] = ()
    capabilities: LedgerCapabilities = field(default_factory=LedgerCapabilities)

    @property
    def balance_debit_enabled(self) -> bool:
        return self.preferred_method == "balance_debit"
