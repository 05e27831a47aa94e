from datetime import timedelta

import pytest

from memostore.schemas import ListFilters, MemoryMetadata, utcnow
from memostore.services.metadata_index import MetadataIndex


async def _seed(index: MetadataIndex) -> None:
    base = utcnow()
    rows = [
        ("m1", "alice", "Travel & Places", "manual", "berlin, city"),
        ("m2", "alice", "Food & Recipes", "import", "sushi"),
        ("m3", "alice", "Travel & Places", "import", "paris, food"),
        ("m4", "bob", "Travel & Places", "manual", "berlin"),
    ]
    for i, (memory_id, user_id, category, source, tags) in enumerate(rows):
        created = base + timedelta(seconds=i)
        await index.insert(MemoryMetadata(
            id=memory_id, user_id=user_id, category=category, source=source,
            tags=tags, created_at=created, updated_at=created,
        ))


@pytest.mark.asyncio
async def test_list_is_newest_first_and_user_scoped(session_factory) -> None:
    index = MetadataIndex(session_factory)
    await _seed(index)

    rows = await index.list_rows("alice")

    assert [r.id for r in rows] == ["m3", "m2", "m1"]
    assert await index.count("alice") == 3
    assert await index.count("bob") == 1


@pytest.mark.asyncio
async def test_filters_combine_with_and_tags_match_any_substring(session_factory) -> None:
    index = MetadataIndex(session_factory)
    await _seed(index)

    travel = await index.list_rows("alice", ListFilters(category="Travel & Places"))
    imported_travel = await index.list_rows("alice", ListFilters(category="Travel & Places", source="import"))
    tagged = await index.list_rows("alice", ListFilters(tags=["berlin", "sushi"]))
    substring = await index.list_rows("alice", ListFilters(tags=["foo"]))

    assert {r.id for r in travel} == {"m1", "m3"}
    assert [r.id for r in imported_travel] == ["m3"]
    assert {r.id for r in tagged} == {"m1", "m2"}
    assert [r.id for r in substring] == ["m3"]


@pytest.mark.asyncio
@pytest.mark.parametrize("tag", ["%", "_", "b_rlin"])
async def test_tag_filter_treats_wildcards_literally(session_factory, tag: str) -> None:
    index = MetadataIndex(session_factory)
    await _seed(index)

    assert await index.list_rows("alice", ListFilters(tags=[tag])) == []
    assert await index.count("alice", ListFilters(tags=[tag])) == 0


@pytest.mark.asyncio
async def test_limit_and_offset_page_through_rows(session_factory) -> None:
    index = MetadataIndex(session_factory)
    await _seed(index)

    first = await index.list_rows("alice", limit=2)
    second = await index.list_rows("alice", limit=2, offset=2)

    assert [r.id for r in first] == ["m3", "m2"]
    assert [r.id for r in second] == ["m1"]


@pytest.mark.asyncio
async def test_update_and_delete_respect_ownership(session_factory) -> None:
    index = MetadataIndex(session_factory)
    await _seed(index)
    row = await index.get("alice", "m1")

    assert await index.get("bob", "m1") is None
    assert not await index.update(row.model_copy(update={"user_id": "bob", "tags": "x"}))
    assert await index.update(row.model_copy(update={"tags": "berlin, home"}))
    assert (await index.get("alice", "m1")).tags == "berlin, home"

    assert not await index.delete("m1", user_id="bob")
    assert await index.delete("m1", user_id="alice")
    assert not await index.exists("m1")


@pytest.mark.asyncio
async def test_stats_group_by_source_and_category(session_factory) -> None:
    index = MetadataIndex(session_factory)
    await _seed(index)

    stats = await index.stats("alice")

    assert stats.total_memories == 3
    assert stats.by_source == {"manual": 1, "import": 2}
    assert stats.by_category == {"Travel & Places": 2, "Food & Recipes": 1}
    assert await index.ids() == {"m1": "alice", "m2": "alice", "m3": "alice", "m4": "bob"}
