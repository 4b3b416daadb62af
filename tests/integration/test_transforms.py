from __future__ import annotations

import pytest

from tierflow.core.tiers.resolver import DISABLE_FEATURE, ENABLE_FEATURE, DataTransform
from tierflow.core.upgrade.session import AppliedTransform
from tierflow.core.upgrade.transforms import TransformApplier


async def _apply_and_revert(stack, transform: DataTransform) -> None:
    applier = TransformApplier(stack.data_store)
    undo = await applier.undo_state("u1", transform)
    await applier.apply("u1", transform)
    await applier.revert("u1", AppliedTransform(transform, undo))


@pytest.mark.asyncio
async def test_reverting_enable_keeps_data_of_an_already_enabled_feature(stack_factory):
    stack = stack_factory()
    await stack.seed_user("u1", tier="starter", per_category=0, feature_records={"roi_analytics": 2})
    await stack.data_store.set_feature_enabled("u1", "roi_analytics", True)

    await _apply_and_revert(stack, DataTransform(kind=ENABLE_FEATURE, feature="roi_analytics"))

    assert "roi_analytics" in await stack.data_store.enabled_features("u1")
    assert stack.data_store.feature_record_counts("u1", "roi_analytics") == {"active": 2, "archived": 0}


@pytest.mark.asyncio
async def test_reverting_enable_archives_data_of_a_previously_disabled_feature(stack_factory):
    stack = stack_factory()
    await stack.seed_user("u1", tier="starter", per_category=0, feature_records={"roi_analytics": 2})
    await stack.data_store.archive_feature_data("u1", "roi_analytics")

    await _apply_and_revert(stack, DataTransform(kind=ENABLE_FEATURE, feature="roi_analytics"))

    assert "roi_analytics" not in await stack.data_store.enabled_features("u1")
    assert stack.data_store.feature_record_counts("u1", "roi_analytics") == {"active": 0, "archived": 2}


@pytest.mark.asyncio
async def test_reverting_disable_leaves_a_never_enabled_feature_archived(stack_factory):
    stack = stack_factory()
    await stack.seed_user("u1", tier="professional", per_category=0, feature_records={"roi_analytics": 2})
    await stack.data_store.archive_feature_data("u1", "roi_analytics")

    await _apply_and_revert(stack, DataTransform(kind=DISABLE_FEATURE, feature="roi_analytics"))

    assert "roi_analytics" not in await stack.data_store.enabled_features("u1")
    assert stack.data_store.feature_record_counts("u1", "roi_analytics") == {"active": 0, "archived": 2}
