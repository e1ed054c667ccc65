"""Tests for commission_kernel.utils.idempotency."""

from datetime import date
from uuid import UUID

import pytest

from commission_kernel.utils import (
    collection_idempotency_key,
    parse_collection_key,
    transfer_group,
)

DEBT_ID = UUID("550e8400-e29b-41d4-a716-446655440000")


class TestCollectionKeys:
    def test_format(self):
        key = collection_idempotency_key(DEBT_ID, date(2024, 1, 1), "balance_debit")
        assert key == (
            "commission-debt:550e8400-e29b-41d4-a716-446655440000:2024-01-01:balance_debit"
        )

    def test_same_day_same_key(self):
        day = date(2024, 3, 9)
        assert collection_idempotency_key(DEBT_ID, day, "card_fallback") == \
            collection_idempotency_key(str(DEBT_ID), day, "card_fallback")

    def test_tier_and_day_distinguish_keys(self):
        day = date(2024, 3, 9)
        keys = {
            collection_idempotency_key(DEBT_ID, day, "balance_debit"),
            collection_idempotency_key(DEBT_ID, day, "card_fallback"),
            collection_idempotency_key(DEBT_ID, date(2024, 3, 10), "balance_debit"),
        }
        assert len(keys) == 3

    def test_parse(self):
        key = collection_idempotency_key(DEBT_ID, date(2024, 1, 31), "card_fallback")
        assert parse_collection_key(key) == (str(DEBT_ID), date(2024, 1, 31), "card_fallback")

    @pytest.mark.parametrize("bad", [
        "",
        "commission-debt:abc",
        "other:550e8400:2024-01-01:balance_debit",
    ])
    def test_parse_rejects_malformed(self, bad):
        with pytest.raises(ValueError):
            parse_collection_key(bad)

    def test_transfer_group(self):
        assert transfer_group(DEBT_ID, date(2024, 1, 1)) == (
            "DEBT-550e8400-e29b-41d4-a716-446655440000-2024-01-01"
        )
