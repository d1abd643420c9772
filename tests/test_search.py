"""Tests for search module."""
from datetime import timedelta

import pytest

from conftest import NOW, FakeHistory, make_record
from history_search.cache_manager import CacheManager
from history_search.config import SimilarityConfig
from history_search.errors import ConfigError, RetrievalError
from history_search.models import MatchedField, SearchOptions
from history_search.search import HistorySearchEngine

FUZZY_ONLY = SearchOptions(include_exact=False)


def github_record(**kwargs):
    return make_record(1, "https://github.com", "GitHub", visit_count=25, days_ago=1 / 24, **kwargs)


def golang_record():
    return make_record(2, "https://golang.org", "The Go Programming Language")


def make_engine(history, cache_config, refresh_config, clock=None, config=None):
    manager = CacheManager(history, cache_config, refresh_config, clock=clock)
    return HistorySearchEngine(history, manager, config)


@pytest.fixture
def engine(fake_history, cache_config, refresh_config, fake_clock):
    return make_engine(fake_history, cache_config, refresh_config, fake_clock)


@pytest.mark.asyncio
class TestScenarios:
    async def test_single_record_matches_both_fields(self, cache_config, refresh_config):
        engine = make_engine(FakeHistory([github_record()]), cache_config, refresh_config)
        result = await engine.search("github", FUZZY_ONLY)

        assert result.match_count == 1
        match = result.matches[0]
        assert match.url == "https://github.com"
        assert match.matched_field == MatchedField.BOTH
        assert match.score >= 0.5

    async def test_title_match_beats_popular_record(self, cache_config, refresh_config):
        history = FakeHistory([github_record(), golang_record()])
        engine = make_engine(history, cache_config, refresh_config)

        result = await engine.search("programming", FUZZY_ONLY)
        assert result.matches[0].url == "https://golang.org"
        assert "https://github.com" not in [m.url for m in result.matches]

        result = await engine.search("programming")
        assert result.matches[0].url == "https://golang.org"

    async def test_empty_query_returns_empty_result(self, engine, fake_history):
        for query in ("", "   "):
            result = await engine.search(query)
            assert result.matches == []
            assert result.match_count == 0
            assert result.elapsed >= 0
        assert fake_history.get_all_calls == 0

    async def test_no_match_above_threshold(self, cache_config, refresh_config):
        history = FakeHistory([github_record(), golang_record()])
        engine = make_engine(history, cache_config, refresh_config)

        result = await engine.search("zzzqxw123")
        assert result.matches == []
        assert result.total_entries == 2


@pytest.mark.asyncio
class TestSearch:
    async def test_results_sorted_and_above_threshold(self, fake_history, cache_config, refresh_config):
        fake_history.records.extend([
            make_record(3, "https://gitlab.com", "GitLab", visit_count=3, days_ago=10),
            make_record(4, "https://gist.github.com", "Gists", visit_count=7, days_ago=2),
            make_record(5, "https://git-scm.com/docs", "Git Documentation", visit_count=1, days_ago=40),
        ])
        engine = make_engine(fake_history, cache_config, refresh_config)

        result = await engine.search("git", FUZZY_ONLY)
        scores = [m.score for m in result.matches]
        assert scores == sorted(scores, reverse=True)
        assert all(m.score >= 0.3 for m in result.matches)
        assert all(m.score >= 0.3 for m in result.fuzzy_matches)

    async def test_exact_match_tagged_and_deduplicated(self, engine):
        result = await engine.search("github")

        assert [m.url for m in result.exact_matches] == ["https://github.com"]
        assert result.exact_matches[0].matched_field == MatchedField.EXACT
        assert result.exact_matches[0].score == 1.0
        assert "https://github.com" not in [m.url for m in result.fuzzy_matches]

        urls = [m.url for m in result.matches]
        assert len(urls) == len(set(urls))
        assert result.matches[0].matched_field == MatchedField.EXACT

    async def test_exact_failure_degrades_to_fuzzy(self, engine, fake_history):
        fake_history.fail_exact = True
        result = await engine.search("github")
        assert result.exact_matches == []
        assert result.matches[0].url == "https://github.com"

    async def test_exact_only(self, engine):
        result = await engine.search("github", SearchOptions(include_fuzzy=False))
        assert [m.url for m in result.matches] == ["https://github.com"]
        assert result.fuzzy_matches == []

    async def test_limit(self, engine):
        result = await engine.search("go", SearchOptions(limit=1, threshold=0.0))
        assert result.match_count == 1

    async def test_threshold_override(self, engine):
        result = await engine.search("githb", SearchOptions(include_exact=False, threshold=1.0))
        assert result.matches == []

    async def test_invalid_options(self, engine):
        with pytest.raises(ConfigError):
            await engine.search("github", SearchOptions(limit=0))
        with pytest.raises(ConfigError):
            await engine.search("github", SearchOptions(threshold=1.5))

    async def test_no_snapshot_and_no_store(self, engine, fake_history):
        fake_history.fail_reads = True
        with pytest.raises(RetrievalError):
            await engine.search("github")

    async def test_search_checks_refresh_policy(self, engine, fake_history, fake_clock):
        await engine.search("github")
        assert fake_history.get_all_calls == 1

        engine.cache_manager.record_writes(10)
        fake_clock.advance(300)
        await engine.search("github")
        await engine.cache_manager.wait_for_refresh()
        assert fake_history.get_all_calls == 2

    async def test_update_config(self, engine):
        engine.update_config(SimilarityConfig(max_results=1, min_similarity_threshold=0.0))
        result = await engine.search("go", FUZZY_ONLY)
        assert result.match_count == 1
        assert engine.config.max_results == 1

    async def test_invalidate_and_stats(self, engine, fake_history):
        await engine.search("github")
        engine.invalidate_and_refresh()
        await engine.cache_manager.wait_for_refresh()
        assert fake_history.get_all_calls == 2
        assert engine.stats().entry_count == 2


@pytest.mark.asyncio
class TestAuxiliaryQueries:
    async def test_get_best_match(self, engine):
        match = await engine.get_best_match("githb")
        assert match is not None
        assert match.url == "https://github.com"
        assert await engine.get_best_match("") is None

    async def test_search_by_domain(self, engine):
        result = await engine.search_by_domain("GitHub")
        assert [m.url for m in result.matches] == ["https://github.com"]
        assert result.total_entries == 2

    async def test_get_recent_unfiltered(self, engine):
        matches = await engine.get_recent(1)
        assert [m.url for m in matches] == ["https://github.com"]
        assert matches[0].matched_field == MatchedField.RECENT
        assert matches[0].score == 1.0

    async def test_get_recent_filtered(self, engine):
        assert await engine.get_recent(5, "zzzqxw123") == []
        matches = await engine.get_recent(5, "github")
        assert matches[0].url == "https://github.com"

    async def test_get_recent_store_failure(self, engine, fake_history):
        fake_history.fail_reads = True
        with pytest.raises(RetrievalError):
            await engine.get_recent(5)

    async def test_get_top_visited(self, fake_history, cache_config, refresh_config):
        fake_history.records.append(
            make_record(3, "https://python.org", "Python", visit_count=200, days_ago=3)
        )
        engine = make_engine(fake_history, cache_config, refresh_config)

        matches = await engine.get_top_visited(2)
        assert [m.url for m in matches] == ["https://python.org", "https://github.com"]
        assert matches[0].matched_field == MatchedField.VISIT_COUNT
        assert matches[0].score == matches[0].visit_score

    async def test_get_top_visited_filtered(self, engine):
        matches = await engine.get_top_visited(5, "zzzqxw123")
        assert matches == []



@pytest.mark.asyncio
class TestTimeRange:
    @pytest.fixture
    def ranged_engine(self, cache_config, refresh_config):
        history = FakeHistory([
            make_record(1, "https://github.com", "GitHub", visit_count=25, days_ago=1, now=NOW),
            make_record(2, "https://gitea.io", "Gitea", visit_count=2, days_ago=2, now=NOW),
            make_record(3, "https://gist.github.com", "Gists", visit_count=7, days_ago=3, now=NOW),
            make_record(4, "https://gitlab.com", "GitLab", visit_count=3, days_ago=10, now=NOW),
            make_record(5, "https://git-scm.com/docs", "Git Documentation"),
        ])
        return make_engine(history, cache_config, refresh_config)

    async def test_only_records_strictly_inside_range(self, ranged_engine):
        start = NOW - timedelta(days=3)
        result = await ranged_engine.search_by_time_range("git", start, NOW, SearchOptions(threshold=0.0))

        assert result.total_entries == 2
        assert {m.url for m in result.matches} == {"https://github.com", "https://gitea.io"}
        scores = [m.score for m in result.matches]
        assert scores == sorted(scores, reverse=True)
        assert result.match_count == len(result.matches)

    async def test_threshold_and_limit_apply(self, ranged_engine):
        start = NOW - timedelta(days=30)
        result = await ranged_engine.search_by_time_range("github", start, NOW, SearchOptions(limit=1))

        assert result.total_entries == 4
        assert [m.url for m in result.matches] == ["https://github.com"]

    async def test_naive_bounds_are_utc(self, ranged_engine):
        start = (NOW - timedelta(days=3)).replace(tzinfo=None)
        end = NOW.replace(tzinfo=None)
        result = await ranged_engine.search_by_time_range("git", start, end, SearchOptions(threshold=0.0))
        assert result.total_entries == 2

    async def test_empty_range_and_blank_query(self, ranged_engine):
        start = NOW - timedelta(days=100)
        result = await ranged_engine.search_by_time_range("git", start, start + timedelta(days=1))
        assert result.total_entries == 0
        assert result.matches == []

        result = await ranged_engine.search_by_time_range("  ", start, NOW)
        assert result.matches == []
