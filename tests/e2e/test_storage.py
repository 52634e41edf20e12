"""
E2E tests for how identifiers land in the store.
"""

import pytest
from sqlalchemy import func, select

from towline.models import ProviderProfile, User

from tests.e2e.conftest import PROVIDER_MID_ID, PROVIDER_NEAR_ID

pytestmark = pytest.mark.asyncio


class TestUuidColumns:

    async def test_digit_only_ids_are_stored_as_text(self, check_db):
        result = await check_db.execute(
            select(func.typeof(User.id)).where(User.id == PROVIDER_NEAR_ID)
        )
        assert result.scalar_one() == "text"

    async def test_digit_only_ids_read_back_intact(self, check_db):
        user = await check_db.get(User, PROVIDER_MID_ID)
        assert user.id == PROVIDER_MID_ID

        profile = (
            await check_db.execute(select(ProviderProfile).where(ProviderProfile.user_id == PROVIDER_MID_ID))
        ).scalar_one()
        assert profile.user_id == PROVIDER_MID_ID
