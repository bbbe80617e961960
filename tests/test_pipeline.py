import pytest

from rankcheck import config
from rankcheck.config import ConfigurationError
from rankcheck.http import RequestMetrics, UpstreamError
from rankcheck.inputs import InputValidationError
from rankcheck.models import (
    RUN_STATUS_CANCELLED,
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
    GeoGridSpec,
    LocaleOptions,
    QueryTask,
)
from rankcheck.pipeline import build_default_fetcher, campaign_locale, rerun_campaign, run_rank_check, throughput
from rankcheck.store import CampaignNotFoundError, InMemoryResultStore


class FakeFetcher:
    """Serves the same scripted pages for every keyword and point."""

    def __init__(self, pages_by_keyword, fail_on_call=None):
        self.pages_by_keyword = pages_by_keyword
        self.fail_on_call = fail_on_call
        self.calls = []

    def fetch_page(self, query, country, language, page, device_type, point=None):
        self.calls.append((query, page, point, country, language, device_type))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise UpstreamError(500, "Internal Server Error")
        pages = self.pages_by_keyword.get(query, [])
        if page - 1 < len(pages):
            return [{"title": t} for t in pages[page - 1]]
        return []


class FakeClock:
    def __init__(self, step=1.0):
        self.now = 0.0
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


class FakeCancel:
    def __init__(self):
        self.flag = False

    def is_set(self):
        return self.flag


TASKS = [
    QueryTask("dentist london", "Bright Smile", "London"),
    QueryTask("plumber belfast", "Property People", "Belfast"),
]

PAGES = {
    "dentist london": [["City Dental Care", "Bright Smile Dental London"], ["Smile Studio"]],
    "plumber belfast": [["Pipe Pros"]],
}


def run(tasks=TASKS, fetcher=None, **kwargs):
    kwargs.setdefault("sleep", lambda s: None)
    kwargs.setdefault("clock", FakeClock())
    kwargs.setdefault("locale", LocaleOptions("gb", "en", "desktop"))
    return run_rank_check(tasks, fetcher=fetcher or FakeFetcher(PAGES), **kwargs)


def rerun(store, campaign_id, fetcher):
    return rerun_campaign(store, campaign_id, fetcher=fetcher, sleep=lambda s: None, clock=FakeClock())


def test_run_collects_matches_and_sentinels():
    fetcher = FakeFetcher(PAGES)

    result = run(fetcher=fetcher)

    assert result.status == RUN_STATUS_COMPLETED
    assert result.processed_queries == 2
    assert result.total_queries == 2
    # 3 listings + 1 sentinel for the second task
    assert result.total_results == 5
    assert result.total_brand_matches == 1
    assert result.total_local_pack_matches == 1
    sentinel = result.observations[-1]
    assert sentinel.keyword == "plumber belfast"
    assert sentinel.title == config.NO_MATCH_TITLE


def test_api_calls_made_counts_every_fetch():
    fetcher = FakeFetcher(PAGES)

    result = run(fetcher=fetcher)

    # dentist: pages 1, 2 and empty 3; plumber: page 1 and empty 2
    assert len(fetcher.calls) == 5
    assert result.api_calls_made == 5


def test_locale_is_passed_to_every_fetch():
    fetcher = FakeFetcher(PAGES)

    run(fetcher=fetcher, locale=LocaleOptions("us", "es", "mobile"))

    assert {c[3:] for c in fetcher.calls} == {("us", "es", "mobile")}


def test_geo_grid_searches_every_point():
    fetcher = FakeFetcher({"dentist london": [["Bright Smile London"]]})
    grid = GeoGridSpec(center_lat=51.5074, center_lng=-0.1278, radius_km=2.0, grid_size=2)

    result = run(tasks=[TASKS[0]], fetcher=fetcher, geo_grid=grid)

    points = {c[2] for c in fetcher.calls}
    assert len(points) == 4
    assert None not in points
    # rank restarts at 1 for every grid point
    assert [m.rank_position for m in result.brand_matches] == [1, 1, 1, 1]
    assert result.total_local_pack_matches == 4
    assert result.api_calls_made == 8


def test_geo_grid_query_scope_continues_rank():
    fetcher = FakeFetcher({"dentist london": [["Bright Smile London"]]})
    grid = GeoGridSpec(center_lat=51.5074, center_lng=-0.1278, radius_km=2.0, grid_size=2)

    result = run(tasks=[TASKS[0]], fetcher=fetcher, geo_grid=grid, rank_scope=config.RANK_SCOPE_QUERY)

    assert [m.rank_position for m in result.brand_matches] == [1, 2, 3, 4]
    assert result.total_local_pack_matches == 3


def test_max_pages_default_follows_config(monkeypatch):
    monkeypatch.setattr(config, "MAX_PAGES_PER_POINT", 1)
    fetcher = FakeFetcher(PAGES)

    result = run(tasks=[TASKS[0]], fetcher=fetcher)

    assert [c[1] for c in fetcher.calls] == [1]
    assert result.api_calls_made == 1


def test_default_fetcher_budget_follows_config(monkeypatch):
    monkeypatch.setenv(config.SERPER_API_KEY_ENV, "test-key")
    monkeypatch.setattr(config, "MAX_API_CALLS_PER_RUN", 7)

    fetcher = build_default_fetcher(RequestMetrics())

    assert fetcher.budget.max_calls == 7
    assert build_default_fetcher(RequestMetrics(), max_api_calls=2).budget.max_calls == 2


def test_progress_events_are_monotonic():
    events = []

    run(progress_sink=events.append)

    assert events[0].current_query == "Starting..."
    assert events[0].processed_queries == 0
    processed = [e.processed_queries for e in events]
    assert processed == sorted(processed)
    assert processed[-1] == 2
    assert all(e.total_queries == 2 for e in events)
    api_calls = [e.api_calls_made for e in events]
    assert api_calls == sorted(api_calls)
    assert api_calls[-1] == 5
    assert {e.current_query for e in events[1:]} == {"dentist london", "plumber belfast"}
    assert max(e.current_page for e in events) == 3


def test_progress_reports_throughput_after_first_query():
    events = []

    run(progress_sink=events.append, clock=FakeClock(step=1.0))

    second_task_start = [e for e in events if e.current_query == "plumber belfast"][0]
    assert second_task_start.queries_per_second > 0
    assert second_task_start.estimated_seconds_remaining >= 1


def test_throughput_is_zero_until_something_completed():
    assert throughput(0, 5.0, 10) == (0.0, 0)
    assert throughput(3, 0.0, 10) == (0.0, 0)
    qps, eta = throughput(2, 4.0, 10)
    assert qps == pytest.approx(0.5)
    assert eta == 16


def test_failure_keeps_partial_results():
    fetcher = FakeFetcher(PAGES, fail_on_call=4)

    result = run(fetcher=fetcher)

    assert result.status == RUN_STATUS_FAILED
    assert result.error_kind == "UpstreamError"
    assert "500" in result.error_message
    assert result.processed_queries == 1
    assert [o.keyword for o in result.observations] == ["dentist london"] * 3
    assert result.api_calls_made == 3


def test_failure_reraises_without_partial_results():
    fetcher = FakeFetcher(PAGES, fail_on_call=1)

    with pytest.raises(UpstreamError):
        run(fetcher=fetcher, keep_partial_results=False)


def test_cancel_returns_cancelled_status():
    cancel = FakeCancel()
    events = []

    def sink(progress):
        events.append(progress)
        if progress.current_query == "plumber belfast":
            cancel.flag = True

    result = run(progress_sink=sink, cancel=cancel)

    assert result.status == RUN_STATUS_CANCELLED
    assert result.error_kind == "RunCancelledError"
    assert result.processed_queries == 1


def test_missing_api_key_fails_before_any_request(monkeypatch):
    monkeypatch.delenv(config.SERPER_API_KEY_ENV, raising=False)

    with pytest.raises(ConfigurationError):
        run_rank_check(TASKS, sleep=lambda s: None)


def test_invalid_inputs_rejected_before_any_request():
    fetcher = FakeFetcher(PAGES)

    with pytest.raises(InputValidationError):
        run(tasks=[], fetcher=fetcher)
    with pytest.raises(InputValidationError):
        run(fetcher=fetcher, locale=LocaleOptions("gb", "en", "tablet"))
    with pytest.raises(InputValidationError):
        run(fetcher=fetcher, geo_grid=GeoGridSpec(51.5, -0.12, radius_km=5.0, grid_size=1))

    assert fetcher.calls == []


def test_result_sink_receives_run():
    store = InMemoryResultStore()

    result = run(result_sink=store, run_id="run-1", meta={"source_name": "queries.csv"})

    saved = store.get_run("run-1")
    assert saved["status"] == RUN_STATUS_COMPLETED
    assert saved["source_name"] == "queries.csv"
    assert saved["country"] == "gb"
    assert saved["total_results"] == result.total_results
    assert len(store.get_results("run-1")) == result.total_results


def test_rerun_campaign_uses_saved_queries_and_locale():
    store = InMemoryResultStore()
    campaign = store.create_campaign("Dentists", [TASKS[0]], country="ie", language="ga")
    fetcher = FakeFetcher(PAGES)

    result = rerun(store, campaign["id"], fetcher)

    assert result.status == RUN_STATUS_COMPLETED
    assert {c[0] for c in fetcher.calls} == {"dentist london"}
    assert {c[3:] for c in fetcher.calls} == {("ie", "ga", "desktop")}
    runs = store.list_runs(campaign_id=campaign["id"])
    assert len(runs) == 1
    assert runs[0]["source_name"] == "Dentists - Rerun"
    assert runs[0]["campaign_id"] == campaign["id"]
    assert runs[0]["country"] == "ie"


def test_rerun_campaign_errors():
    store = InMemoryResultStore()
    empty = store.create_campaign("Empty")
    fetcher = FakeFetcher(PAGES)

    with pytest.raises(CampaignNotFoundError):
        rerun(store, "missing", fetcher)
    with pytest.raises(InputValidationError, match="no saved query data"):
        rerun(store, empty["id"], fetcher)

    assert fetcher.calls == []
    assert store.list_runs() == []


def test_campaign_locale_defaults():
    locale = campaign_locale({"country": None, "language": None}, device_type="mobile")

    assert locale == LocaleOptions(config.DEFAULT_COUNTRY, config.DEFAULT_LANGUAGE, "mobile")