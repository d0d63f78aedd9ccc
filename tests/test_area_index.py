import asyncio

import pytest

from area_index import AreaIndex
from conftest import AREAS, FakeApi
from http_client import ApiError


@pytest.fixture
async def index():
    idx = AreaIndex(FakeApi({"area-search/dropdown": AREAS}), debounce_seconds=0)
    await idx.load()
    return idx


async def test_load_fetches_once_with_limit():
    api = FakeApi({"area-search/dropdown": AREAS})
    idx = AreaIndex(api, load_limit=500)

    await asyncio.gather(idx.load(), idx.load())
    await idx.load()

    assert api.calls == [("GET", "area-search/dropdown", {"limit": 500})]
    assert idx.loaded
    assert idx.get("2").label == "Motijheel"
    assert idx.get("2").coordinates.latitude == 23.7330


async def test_load_skips_duplicates_and_entries_without_coordinates():
    items = AREAS[:2] + [
        dict(AREAS[0]),
        {"value": "9", "label": "Nowhere", "area": "Nowhere"},
    ]
    idx = AreaIndex(FakeApi({"area-search/dropdown": {"areas": items}}))

    areas = await idx.load()

    assert [a.id for a in areas] == ["1", "2"]


async def test_load_caps_catalog_size():
    idx = AreaIndex(FakeApi({"area-search/dropdown": AREAS}), load_limit=3)
    assert len(await idx.load()) == 3


async def test_load_failure_gives_empty_catalog():
    idx = AreaIndex(FakeApi({"area-search/dropdown": ApiError("down", status=503)}))

    assert await idx.load() == []
    assert idx.loaded
    assert idx.query("gul", "pickup") == []


async def test_query_ranks_label_prefix_before_substring_and_address(index):
    # "an" starts no label; it is inside Gulshan/Dhanmondi/Banani labels
    # and inside no other address
    results = index.query("an", "pickup")
    assert [a.label for a in results] == ["Gulshan 1", "Dhanmondi", "Banani"]

    results = index.query("ba", "destination")
    assert [a.label for a in results] == ["Banani", "Agrabad"]


async def test_query_matches_address_case_insensitively(index):
    results = index.query("CHATTOGRAM", "pickup")
    assert [a.label for a in results] == ["Agrabad"]


async def test_empty_query_returns_first_entries():
    idx = AreaIndex(FakeApi({"area-search/dropdown": AREAS}), query_limit=2)
    await idx.load()
    assert [a.id for a in idx.query("  ", "pickup")] == ["1", "2"]


async def test_query_rejects_unknown_field(index):
    with pytest.raises(ValueError):
        index.query("gul", "via")


async def test_superseded_lookup_returns_none():
    idx = AreaIndex(FakeApi({"area-search/dropdown": AREAS}), debounce_seconds=0.05)

    first, second = await asyncio.gather(
        idx.lookup("Gu", "pickup"),
        idx.lookup("Mot", "pickup"),
    )

    assert first is None
    assert [a.label for a in second] == ["Motijheel"]


async def test_lookups_on_different_fields_are_independent():
    idx = AreaIndex(FakeApi({"area-search/dropdown": AREAS}), debounce_seconds=0.05)

    pickup, destination = await asyncio.gather(
        idx.lookup("Gul", "pickup"),
        idx.lookup("Mot", "destination"),
    )

    assert [a.label for a in pickup] == ["Gulshan 1"]
    assert [a.label for a in destination] == ["Motijheel"]
