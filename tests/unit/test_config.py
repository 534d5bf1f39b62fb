"""Unit tests for configuration, log redaction and metric helpers."""

import os
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from prometheus_client import Histogram
from pydantic import ValidationError

from commission_service.config import Settings
from commission_service.infrastructure.metrics import track_duration
from commission_service.logging import redact_sensitive


class TestSettings:
    """Tests for Settings defaults and environment overrides."""

    def test_defaults(self) -> None:
        """Test default ledger, sweep and payout configuration values."""
        settings = Settings(_env_file=None)

        assert settings.commission_rate == Decimal("0.10")
        assert settings.escrow_period == timedelta(days=7)
        assert settings.sweep_interval == timedelta(minutes=15)
        assert settings.stale_claim_threshold == timedelta(minutes=30)
        assert settings.minimum_payout == 1000
        assert settings.payout_batch_size == 50
        assert settings.payout_retry_attempts == 3
        assert settings.payout_worker_pool_size == 4
        assert settings.notification_ttl == timedelta(days=90)
        assert not settings.distributed_lock_enabled

    def test_values_from_env(self) -> None:
        """Test settings can be configured via environment variables."""
        env_vars = {
            "COMMISSION_RATE": "0.15",
            "ESCROW_PERIOD_MS": "3600000",
            "MINIMUM_PAYOUT": "5000",
            "PAYOUT_BATCH_SIZE": "25",
            "DISTRIBUTED_LOCK_ENABLED": "true",
            "WEBHOOK_SECRET": "whsec_from_env",
        }

        with patch.dict(os.environ, env_vars, clear=False):
            settings = Settings(_env_file=None)

        assert settings.commission_rate == Decimal("0.15")
        assert settings.escrow_period == timedelta(hours=1)
        assert settings.minimum_payout == 5000
        assert settings.payout_batch_size == 25
        assert settings.distributed_lock_enabled
        assert settings.webhook_secret == "whsec_from_env"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"commission_rate": Decimal("1.5")},
            {"commission_rate": Decimal("-0.1")},
            {"payout_batch_size": 0},
            {"payout_retry_attempts": 0},
            {"escrow_period_ms": -1},
        ],
    )
    def test_out_of_range_values_rejected(self, overrides: dict) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **overrides)


class TestRedactSensitive:
    """Tests for the redact_sensitive structlog processor."""

    def test_masks_all_but_last_four(self) -> None:
        event = redact_sensitive(None, "info", {"event": "x", "signature": "abcdef123456"})

        assert event["signature"] == "***3456"

    def test_short_values_fully_masked(self) -> None:
        event = redact_sensitive(None, "info", {"event": "x", "secret_key": "abc"})

        assert event["secret_key"] == "***"

    def test_other_keys_untouched(self) -> None:
        event = redact_sensitive(None, "info", {"event": "x", "seller_id": "seller-001", "signature": None})

        assert event == {"event": "x", "seller_id": "seller-001", "signature": None}


class TestTrackDuration:
    """Tests for the track_duration decorator."""

    @pytest.mark.asyncio
    async def test_observes_even_on_error(self) -> None:
        histogram = Histogram("test_track_duration_seconds", "test histogram")

        @track_duration(histogram)
        async def failing() -> None:
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await failing()

        count = next(
            sample.value
            for metric in histogram.collect()
            for sample in metric.samples
            if sample.name == "test_track_duration_seconds_count"
        )
        assert count == 1

    @pytest.mark.asyncio
    async def test_returns_wrapped_result(self) -> None:
        histogram = Histogram("test_track_duration_result_seconds", "test histogram")

        @track_duration(histogram)
        async def compute(value: int) -> int:
            return value * 2

        assert await compute(21) == 42
