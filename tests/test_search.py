"""Tests for searching the loaded message window."""

import pytest

from threadline.reactions import ReactionAggregator
from threadline.search import SearchIndex
from threadline.store import MessageStore
from tests.conftest import make_message


@pytest.fixture
def index(feed, scope, other_scope):
    store = MessageStore()
    store.upsert(make_message("m1", scope, ts=1, text="Deploy went fine"))
    store.upsert(make_message("m2", scope, ts=2, text="lunch?", author_id="bob", author_name="Bob"))
    store.upsert(make_message("m3", scope, ts=3, text="deploy again tomorrow"))
    store.upsert(make_message("m4", scope, ts=4, text="ok"))
    store.upsert(make_message("x1", other_scope, ts=5, text="deploy elsewhere"))
    reactions = ReactionAggregator(feed)
    reactions.apply("m4", {"🚀": ["bob"]})
    return SearchIndex(store, reactions)


def _ids(results):
    return [m.id for m in results]


def test_text_match_is_case_insensitive_newest_first(index, scope):
    assert _ids(index.search("DEPLOY", scope)) == ["m3", "m1"]


def test_matches_author_name(index, scope):
    assert _ids(index.search("bob", scope)) == ["m2"]


def test_matches_reaction_emoji(index, scope):
    assert _ids(index.search("🚀", scope)) == ["m4"]


def test_reacting_users_are_not_matched(index, scope):
    # bob reacted to m4 but only authored m2
    assert "m4" not in _ids(index.search("bob", scope))


def test_limit(index, scope):
    assert _ids(index.search("deploy", scope, limit=1)) == ["m3"]


def test_blank_query_matches_nothing(index, scope):
    assert index.search("", scope) == []
    assert index.search("   ", scope) == []


def test_results_stay_within_scope(index, other_scope):
    assert _ids(index.search("deploy", other_scope)) == ["x1"]


def test_without_reactions(scope):
    store = MessageStore()
    store.upsert(make_message("m1", scope, text="plain"))
    assert _ids(SearchIndex(store).search("PLAIN", scope)) == ["m1"]
