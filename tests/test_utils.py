"""Unit tests for shared utilities, enums and errors."""
from __future__ import annotations

import asyncio
import gc
from datetime import datetime, timezone

import pytest
import structlog

from astral_trust.config import TrustServiceConfig
from astral_trust.enums import CrisisSeverity
from astral_trust.exceptions import ConflictError, NotFoundError, SecurityViolationError, ValidationError
from astral_trust.observability import configure_logging
from astral_trust.utils import CryptoUtils, DateTimeUtils, KeyedLock


class TestCrisisSeverity:
    """Tests for severity ordering helpers."""

    def test_rank_order(self):
        assert CrisisSeverity.LOW.rank < CrisisSeverity.MEDIUM.rank < \
            CrisisSeverity.HIGH.rank < CrisisSeverity.CRITICAL.rank

    def test_highest(self):
        assert CrisisSeverity.highest(CrisisSeverity.MEDIUM, CrisisSeverity.HIGH,
                                      CrisisSeverity.LOW) == CrisisSeverity.HIGH
        assert CrisisSeverity.highest() == CrisisSeverity.LOW

    def test_from_string_aliases(self):
        assert CrisisSeverity.from_string(" Severe ") == CrisisSeverity.CRITICAL
        assert CrisisSeverity.from_string("moderate") == CrisisSeverity.MEDIUM
        with pytest.raises(ValueError):
            CrisisSeverity.from_string("unknown")


class TestUtils:
    """Tests for clock and crypto helpers."""

    def test_ensure_utc(self):
        naive = datetime(2026, 1, 1, 12, 0)
        assert DateTimeUtils.ensure_utc(naive).tzinfo == timezone.utc

    def test_minutes_between(self):
        start = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        end = datetime(2026, 1, 1, 12, 30, tzinfo=timezone.utc)
        assert DateTimeUtils.minutes_between(start, end) == 30.0

    def test_hmac_sign(self):
        assert CryptoUtils.hmac_sign("text", "k1") == CryptoUtils.hmac_sign("text", "k1")
        assert CryptoUtils.hmac_sign("text", "k1") != CryptoUtils.hmac_sign("text", "k2")

    def test_generate_id(self):
        assert CryptoUtils.generate_id("alert").startswith("alert_")
        assert CryptoUtils.generate_id("alert") != CryptoUtils.generate_id("alert")


class TestKeyedLock:
    """Tests for per-key lock registry."""

    def test_same_key_same_lock(self):
        locks = KeyedLock()
        lock = locks("a")
        assert locks("a") is lock
        assert locks("b") is not lock

    def test_unused_locks_released(self):
        locks = KeyedLock()
        locks("a")
        gc.collect()
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_do_not_contend(self):
        locks = KeyedLock()
        async with locks("a"):
            await asyncio.wait_for(locks("b").acquire(), timeout=0.1)


class TestErrors:
    """Tests for the structured error hierarchy."""

    def test_to_dict_hides_internal_message(self):
        error = SecurityViolationError("IP mismatch for sess_123", violation="ip_address_mismatch")
        data = error.to_dict()["error"]
        assert data["code"] == "SECURITY_VIOLATION"
        assert data["message"] == "Unauthorized"
        assert "sess_123" not in str(data)
        assert data["correlation_id"]

    def test_validation_error_field(self):
        error = ValidationError("bad", field="purpose")
        assert error.field == "purpose"
        assert error.details["field"] == "purpose"

    def test_not_found_details(self):
        error = NotFoundError("Consent", "c1")
        assert error.details == {"entity_type": "Consent", "entity_id": "c1"}

    def test_conflict_status(self):
        error = ConflictError("nope", entity_id="c1", current_status="denied")
        assert error.current_status == "denied"


class TestLogging:
    """Tests for structlog configuration."""

    def test_configure_logging(self):
        configure_logging(TrustServiceConfig(debug=True, log_level="debug"))
        configure_logging(TrustServiceConfig(debug=False, log_level="WARNING"))
        structlog.reset_defaults()
