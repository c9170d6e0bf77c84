"""Tests for fragment listing filters."""

import pytest

from knowledge_store.core.queries import FragmentFilters, build_fragment_query

TENANT = "tenant-a"
ACTOR = "member-1"


@pytest.fixture
def seeded(store):
    hr = store.create_source(TENANT, "HR", icon="people", actor=ACTOR)
    store.create_fragment(
        TENANT, "Vacation days", "Employees get 25 days", source_id=hr.id, tags=["hr", "leave"], actor=ACTOR
    )
    store.create_fragment(
        TENANT, "Sick leave", "Report before 9am", source_id=hr.id, tags=["leave"], actor=ACTOR
    )
    store.create_fragment(TENANT, "Été schedule", "Summer hours apply", tags=["hr"], actor=ACTOR)
    return hr


def titles(fragments):
    return [f.title for f in fragments]


def test_no_filters_newest_first(store, seeded):
    assert titles(store.get_fragments(TENANT)) == ["Été schedule", "Sick leave", "Vacation days"]


def test_search_is_case_insensitive(store, seeded):
    found = store.get_fragments(TENANT, FragmentFilters(search="VACATION"))
    assert titles(found) == ["Vacation days"]


def test_search_matches_content(store, seeded):
    found = store.get_fragments(TENANT, FragmentFilters(search="9AM"))
    assert titles(found) == ["Sick leave"]


def test_search_unicode_casefold(store, seeded):
    found = store.get_fragments(TENANT, FragmentFilters(search="ÉTÉ"))
    assert titles(found) == ["Été schedule"]


def test_blank_search_is_ignored(store, seeded):
    assert len(store.get_fragments(TENANT, FragmentFilters(search="   "))) == 3


def test_tags_require_all(store, seeded):
    assert titles(store.get_fragments(TENANT, FragmentFilters(tags=("hr", "leave")))) == [
        "Vacation days"
    ]
    assert len(store.get_fragments(TENANT, FragmentFilters(tags=("leave",)))) == 2


def test_source_filter(store, seeded):
    found = store.get_fragments(TENANT, FragmentFilters(source_id=seeded.id))
    assert titles(found) == ["Sick leave", "Vacation days"]
    assert all(f.source["name"] == "HR" for f in found)


def test_active_filter(store, seeded):
    sick = store.get_fragments(TENANT, FragmentFilters(search="sick"))[0]
    store.toggle_fragment_status(TENANT, sick.id, actor=ACTOR)

    assert "Sick leave" not in titles(store.get_fragments(TENANT, FragmentFilters(is_active=True)))
    assert titles(store.get_fragments(TENANT, FragmentFilters(is_active=False))) == ["Sick leave"]


def test_has_embedding_flag(store, seeded, embed):
    vacation = store.get_fragments(TENANT, FragmentFilters(search="vacation"))[0]
    embed(vacation)

    flags = {f.title: f.has_embedding for f in store.get_fragments(TENANT)}
    assert flags == {"Vacation days": True, "Sick leave": False, "Été schedule": False}


def test_build_fragment_query_params():
    sql, params = build_fragment_query(
        TENANT, FragmentFilters(source_id="s1", search="x", tags=("a", "b"), is_active=False)
    )
    assert params == [TENANT, "s1", "x", "x", "a", "b", 0]
    assert sql.count("json_each") == 2
    assert "ORDER BY f.created_at DESC" in sql
