"""
Unit tests for the settings provider layer and its typed views.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from towline.core.errors import InvalidRequestError
from towline.models.job import JobType
from towline.models.system_setting import SettingType, SystemSetting
from towline.services.settingsProvider import (
    SETTING_DEFAULTS,
    DatabaseSettingsProvider,
    StaticSettingsProvider,
    load_dispatch_policy,
    load_pricing_rates,
    load_settlement_rates,
)


def _row(key: str, value: str, value_type: SettingType = SettingType.NUMBER) -> SystemSetting:
    return SystemSetting(key=key, value=value, value_type=value_type)


def _result(row):
    result = MagicMock()
    result.scalar_one_or_none.return_value = row
    return result


class TestStaticSettingsProvider:

    @pytest.mark.asyncio
    async def test_falls_back_to_defaults(self):
        provider = StaticSettingsProvider()
        assert await provider.get_number("TOWING_BASE_PRICE") == float(SETTING_DEFAULTS["TOWING_BASE_PRICE"])

    @pytest.mark.asyncio
    async def test_override_wins(self):
        provider = StaticSettingsProvider({"TOWING_BASE_PRICE": "75"})
        assert await provider.get_number("TOWING_BASE_PRICE") == 75.0

    @pytest.mark.asyncio
    async def test_explicit_default_for_unknown_key(self):
        provider = StaticSettingsProvider()
        assert await provider.get_number("UNKNOWN", 3) == 3.0


class TestDatabaseSettingsProvider:

    @pytest.mark.asyncio
    async def test_reads_row(self, mock_db):
        mock_db.execute.return_value = _result(_row("VAT_RATE", "0.15"))
        provider = DatabaseSettingsProvider(mock_db)

        assert await provider.get_number("VAT_RATE") == 0.15

    @pytest.mark.asyncio
    async def test_missing_row_uses_default(self, mock_db):
        mock_db.execute.return_value = _result(None)
        provider = DatabaseSettingsProvider(mock_db)

        assert await provider.get_number("TOWING_SEARCH_RADIUS") == 10.0

    @pytest.mark.asyncio
    async def test_unparsable_value_uses_default(self, mock_db):
        mock_db.execute.return_value = _result(_row("TOWING_NIGHT_SURGE", "lots"))
        provider = DatabaseSettingsProvider(mock_db)

        assert await provider.get_number("TOWING_NIGHT_SURGE") == 1.3

    @pytest.mark.asyncio
    async def test_rows_are_cached_per_instance(self, mock_db):
        mock_db.execute.return_value = _result(_row("VAT_RATE", "0.15"))
        provider = DatabaseSettingsProvider(mock_db)

        await provider.get_number("VAT_RATE")
        await provider.get_number("VAT_RATE")

        assert mock_db.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_get_json(self, mock_db):
        mock_db.execute.return_value = _result(_row("FLAGS", '{"a": 1}', SettingType.JSON))
        provider = DatabaseSettingsProvider(mock_db)

        assert await provider.get_json("FLAGS") == {"a": 1}

    @pytest.mark.asyncio
    async def test_get_bool(self, mock_db):
        mock_db.execute.return_value = _result(_row("ENABLED", "Yes", SettingType.BOOLEAN))
        provider = DatabaseSettingsProvider(mock_db)

        assert await provider.get_bool("ENABLED") is True


class TestTypedViews:

    @pytest.mark.asyncio
    async def test_pricing_rates_per_job_type(self):
        provider = StaticSettingsProvider({"CARWASH_BASE_PRICE": 45, "CARWASH_PRICE_PER_KM": 0})

        rates = await load_pricing_rates(provider, JobType.CAR_WASH)

        assert rates.base_fee == Decimal("45.0")
        assert rates.per_km_rate == Decimal("0.0")

    @pytest.mark.asyncio
    async def test_dispatch_policy(self):
        provider = StaticSettingsProvider({"TOWING_BROADCAST_TIMEOUT": 5, "TOWING_SEARCH_RADIUS": 25})

        policy = await load_dispatch_policy(provider, JobType.TOWING)

        assert policy.broadcast_timeout_minutes == 5.0
        assert policy.search_radius_km == 25.0
        assert policy.location_max_age_minutes == 30.0

    @pytest.mark.asyncio
    async def test_settlement_rates_defaults(self):
        rates = await load_settlement_rates(StaticSettingsProvider())

        assert rates.vat_rate == Decimal("0.145")
        assert rates.commission_percent == Decimal("10.0")

    @pytest.mark.asyncio
    async def test_vat_stored_as_percent_is_rejected(self):
        with pytest.raises(InvalidRequestError) as exc_info:
            await load_settlement_rates(StaticSettingsProvider({"VAT_RATE": 14.5}))
        assert exc_info.value.details == {"key": "VAT_RATE"}

    @pytest.mark.asyncio
    async def test_commission_out_of_range_is_rejected(self):
        with pytest.raises(InvalidRequestError):
            await load_settlement_rates(StaticSettingsProvider({"PLATFORM_COMMISSION_PERCENT": -5}))
