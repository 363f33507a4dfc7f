#!/usr/bin/env python3
"""
Unit tests for the monthly budget guard.
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock

import pytest

from ..budget import BudgetGuard, month_key
from ..error_tracker import BudgetExceeded
from ..models import ApiBudgetSettings
from ..repository import SQLiteDirectoryRepository


MARCH = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
FEBRUARY = datetime(2026, 2, 27, 12, 0, tzinfo=timezone.utc)


class TestBudgetGuard:
    """Test budget gating, usage aggregation and settings."""

    @pytest.fixture
    def repository(self):
        """Create a temporary directory database."""
        with tempfile.TemporaryDirectory() as temp_dir:
            yield SQLiteDirectoryRepository(str(Path(temp_dir) / "directory.sqlite"))

    @pytest.fixture
    def guard(self, repository):
        return BudgetGuard(repository, clock=lambda: MARCH)

    def test_month_key_format(self):
        assert month_key(MARCH) == "2026-03"

    def test_allowed_with_no_usage(self, guard):
        check = guard.check_allowed()
        assert check.allowed is True
        assert check.reason is None
        assert check.usage.used_usd == 0
        assert check.usage.limit_usd == 5.0
        assert check.usage.percent_used == 0

    def test_denied_when_usage_reaches_limit(self, guard):
        """Usage equal to the limit exhausts the budget."""
        guard.record(tokens_used=1000, cost_usd=5.00)

        check = guard.check_allowed()

        assert check.allowed is False
        assert check.reason == "Monthly budget exhausted ($5.00 / $5.00)"
        assert check.usage.percent_used == 100

    def test_ensure_allowed_raises_when_exhausted(self, guard):
        assert guard.ensure_allowed('land').used_usd == 0

        guard.record(tokens_used=1000, cost_usd=6.00)

        with pytest.raises(BudgetExceeded) as exc_info:
            guard.ensure_allowed('land')
        assert exc_info.value.message == "Monthly budget exhausted ($6.00 / $5.00)"
        assert exc_info.value.institution_id == 'land'
        assert exc_info.value.usage.percent_used == 120

    def test_allowed_just_below_limit(self, guard):
        guard.record(tokens_used=1000, cost_usd=4.99)

        check = guard.check_allowed()

        assert check.allowed is True
        assert check.usage.percent_used == 100

    def test_usage_from_previous_month_is_ignored(self, repository, guard):
        """Budget resets per calendar month."""
        BudgetGuard(repository, clock=lambda: FEBRUARY).record(tokens_used=1000, cost_usd=5.00)

        assert guard.check_allowed().allowed is True

    def test_not_paused_when_pause_disabled(self, guard):
        guard.update_settings(pause_on_exhausted=False)
        guard.record(tokens_used=1000, cost_usd=7.50)

        check = guard.check_allowed()

        assert check.allowed is True
        assert check.usage.percent_used == 150

    def test_zero_limit_reports_zero_percent(self, guard):
        guard.update_settings(monthly_limit_usd=0.0, pause_on_exhausted=False)
        guard.record(tokens_used=10, cost_usd=0.5)

        assert guard.check_allowed().usage.percent_used == 0

    def test_record_swallows_persistence_failures(self):
        """A failing ledger write never reaches the caller."""
        repository = Mock()
        repository.add_api_usage.side_effect = Exception("database is locked")
        guard = BudgetGuard(repository, clock=lambda: MARCH)

        guard.record(tokens_used=100, cost_usd=0.01, institution_id="inst-1")

        repository.add_api_usage.assert_called_once()
        record = repository.add_api_usage.call_args[0][0]
        assert record.month_key == "2026-03"
        assert record.institution_id == "inst-1"

    def test_update_settings_keeps_unspecified_fields(self, guard):
        guard.update_settings(monthly_limit_usd=20.0)
        settings = guard.update_settings(alert_threshold_percent=50)

        assert settings.monthly_limit_usd == 20.0
        assert settings.alert_threshold_percent == 50
        assert settings.pause_on_exhausted is True

    def test_default_settings_used_until_stored(self, repository):
        guard = BudgetGuard(repository, ApiBudgetSettings(monthly_limit_usd=1.0), clock=lambda: MARCH)
        guard.record(tokens_used=10, cost_usd=1.0)

        assert guard.check_allowed().allowed is False

    def test_status(self, guard):
        guard.record(tokens_used=3000, cost_usd=3.0)
        guard.record(tokens_used=1000, cost_usd=1.0)

        status = guard.status()

        assert status['month_key'] == "2026-03"
        assert status['used_usd'] == 4.0
        assert status['remaining_usd'] == 1.0
        assert status['percent_used'] == 80
        assert status['is_warning'] is True
        assert status['is_exhausted'] is False
        assert status['sync_count'] == 2
        assert status['tokens_used'] == 4000
