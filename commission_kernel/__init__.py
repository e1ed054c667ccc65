"""
Commission Kernel

The ledger core of the commission settlement engine:
- Debt ledger with an explicit status state machine
- Append-only settlement ledger (sole source of settlement idempotency)
- Atomic manual-payment intake with row-level locking
- Admin decisions and idempotent webhook-confirmed settlement
"""

__version__ = "0.1.0"
