"""Run orchestration."""
from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from . import config
from .config import ConfigurationError
from .geo import search_points
from .http import BudgetExceededError, HttpClient, RequestBudget, RequestMetrics, UpstreamError
from .inputs import InputValidationError, validate_tasks
from .matching import CancelToken, MatchCounters, PageEvent, PageFetcher, RankMatcher, RunCancelledError
from .models import (
    RUN_STATUS_CANCELLED,
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
    GeoGridSpec,
    ListingObservation,
    LocaleOptions,
    QueryTask,
    RunProgress,
    RunResult,
)
from .progress import ProgressSink
from .serper_client import SerperPlacesClient
from .store import CampaignNotFoundError, CampaignStore, ResultSink, campaign_tasks, new_run_id

logger = logging.getLogger(__name__)

RUN_ERRORS = (UpstreamError, BudgetExceededError, ConfigurationError, RunCancelledError)


def validate_locale(locale: LocaleOptions) -> None:
    if not (locale.country or "").strip():
        raise InputValidationError("Country (gl) must be set")
    if not (locale.language or "").strip():
        raise InputValidationError("Language (hl) must be set")
    if locale.device_type not in config.DEVICE_TYPES:
        raise InputValidationError(
            f"device_type must be one of: {', '.join(config.DEVICE_TYPES)} (got {locale.device_type!r})"
        )


def build_default_fetcher(
    metrics: RequestMetrics,
    max_api_calls: Optional[int] = None,
) -> SerperPlacesClient:
    # Fail before the run starts; the client re-reads the key on every call.
    config.get_api_key()
    http_client = HttpClient(
        timeout=config.HTTP_TIMEOUT_SECONDS,
        retry_max=config.HTTP_RETRY_MAX,
        backoff_base=config.HTTP_BACKOFF_BASE,
        backoff_max=config.HTTP_BACKOFF_MAX,
        metrics=metrics,
    )
    if max_api_calls is None:
        max_api_calls = config.MAX_API_CALLS_PER_RUN
    budget = RequestBudget(max_calls=max_api_calls, metrics=metrics)
    return SerperPlacesClient(http_client, budget)


def throughput(completed: int, elapsed: float, total: int) -> Tuple[float, int]:
    """Return (queries_per_second, estimated_seconds_remaining); both 0 until something completed."""
    if completed <= 0 or elapsed <= 0:
        return 0.0, 0
    qps = completed / elapsed
    remaining = max(0, total - completed)
    return qps, int(math.ceil(remaining / qps))


def run_rank_check(
    tasks: Sequence[QueryTask],
    locale: Optional[LocaleOptions] = None,
    geo_grid: Optional[GeoGridSpec] = None,
    progress_sink: Optional[ProgressSink] = None,
    fetcher: Optional[PageFetcher] = None,
    result_sink: Optional[ResultSink] = None,
    run_id: Optional[str] = None,
    rank_scope: Optional[str] = None,
    page_delay: Optional[float] = None,
    max_pages: Optional[int] = None,
    max_api_calls: Optional[int] = None,
    keep_partial_results: Optional[bool] = None,
    cancel: Optional[CancelToken] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    log: Optional[logging.Logger] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> RunResult:
    """Check every task against the search API, strictly one request at a time.

    Raises InputValidationError for bad tasks/locale/grid and
    ConfigurationError for a missing credential before any request is made.
    Failures after the first request either re-raise (keep_partial_results
    False) or return a RunResult with status "failed"/"cancelled" holding
    the observations collected so far.
    """
    log = log or logger
    locale = locale or LocaleOptions()
    rank_scope = rank_scope or config.RANK_SCOPE
    page_delay = config.PAGE_DELAY_SECONDS if page_delay is None else page_delay
    if keep_partial_results is None:
        keep_partial_results = config.KEEP_PARTIAL_RESULTS

    task_list = validate_tasks(tasks)
    validate_locale(locale)
    points = search_points(geo_grid)

    metrics = RequestMetrics()
    if fetcher is None:
        fetcher = build_default_fetcher(metrics, max_api_calls=max_api_calls)

    counters = MatchCounters()
    matcher = RankMatcher(
        fetcher,
        locale,
        points=points,
        rank_scope=rank_scope,
        page_delay=page_delay,
        max_pages=max_pages,
        sleep=sleep,
        cancel=cancel,
        counters=counters,
        log=log,
    )

    total = len(task_list)
    observations: List[ListingObservation] = []
    start = clock()
    completed = 0
    status = RUN_STATUS_COMPLETED
    error: Optional[BaseException] = None

    def emit(current_query: str, processed: int, qps: float, eta: int, page: int) -> None:
        if progress_sink is None:
            return
        progress_sink(
            RunProgress(
                current_query=current_query,
                total_queries=total,
                processed_queries=processed,
                queries_per_second=round(qps, 2),
                estimated_seconds_remaining=eta,
                api_calls_made=counters.api_calls_made,
                current_page=page,
            )
        )

    log.info(
        "Starting rank check: queries=%s points_per_query=%s gl=%s hl=%s device=%s rank_scope=%s",
        total,
        len(points),
        locale.country,
        locale.language,
        locale.device_type,
        rank_scope,
    )
    emit("Starting...", 0, 0.0, 0, 1)

    try:
        for i, task in enumerate(task_list):
            log.info(
                "Processing query %s/%s: %r for brand %r - %r",
                i + 1,
                total,
                task.keyword,
                task.brand_name,
                task.branch_name,
            )
            qps, eta = throughput(i, clock() - start, total)
            emit(task.keyword, i + 1, qps, eta, 1)

            def on_page(event: PageEvent, _i: int = i) -> None:
                qps_now, eta_now = throughput(_i + 1, clock() - start, total)
                emit(event.task.keyword, _i + 1, qps_now, eta_now, event.page)

            for observation in matcher.iter_observations(task, on_page=on_page):
                observations.append(observation)
            completed += 1
    except RUN_ERRORS as exc:
        status = RUN_STATUS_CANCELLED if isinstance(exc, RunCancelledError) else RUN_STATUS_FAILED
        error = exc
        log.error(
            "Rank check %s after %s/%s queries (%s api calls): %s",
            status,
            completed,
            total,
            counters.api_calls_made,
            exc,
        )
        if not keep_partial_results:
            raise

    result = RunResult(
        observations=observations,
        total_queries=total,
        api_calls_made=counters.api_calls_made,
        elapsed_seconds=max(0.0, clock() - start),
        status=status,
        error_kind=type(error).__name__ if error is not None else None,
        error_message=str(error) if error is not None else None,
        processed_queries=completed,
    )

    log.info(
        "Rank check %s: queries=%s results=%s brand_matches=%s local_pack_matches=%s api_calls=%s retries=%s elapsed=%.1fs",
        result.status,
        result.processed_queries,
        result.total_results,
        result.total_brand_matches,
        result.total_local_pack_matches,
        result.api_calls_made,
        metrics.retries,
        result.elapsed_seconds,
    )

    if result_sink is not None:
        run_meta = {
            "country": locale.country,
            "language": locale.language,
            "device_type": locale.device_type,
            "geo_grid": geo_grid,
            "rank_scope": rank_scope,
        }
        if meta:
            run_meta.update(meta)
        result_sink.save_run(run_id or new_run_id(), result, run_meta)

    return result


def campaign_locale(campaign: Dict[str, Any], device_type: Optional[str] = None) -> LocaleOptions:
    return LocaleOptions(
        country=campaign.get("country") or config.DEFAULT_COUNTRY,
        language=campaign.get("language") or config.DEFAULT_LANGUAGE,
        device_type=device_type or config.DEFAULT_DEVICE_TYPE,
    )


def rerun_campaign(
    store: CampaignStore,
    campaign_id: str,
    locale: Optional[LocaleOptions] = None,
    **run_kwargs: Any,
) -> RunResult:
    """Run a campaign's saved queries again and store the run under the campaign.

    ``locale`` defaults to the campaign's country/language on desktop.
    """
    campaign = store.get_campaign(campaign_id)
    if campaign is None:
        raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")
    tasks = campaign_tasks(campaign)
    if not tasks:
        raise InputValidationError("Campaign has no saved query data")

    meta = dict(run_kwargs.pop("meta", None) or {})
    meta["campaign_id"] = campaign["id"]
    meta.setdefault("source_name", f"{campaign['name']} - Rerun")
    logger.info("Re-running campaign %r: %s saved queries", campaign["name"], len(tasks))
    return run_rank_check(
        tasks,
        locale=locale or campaign_locale(campaign),
        result_sink=store,
        meta=meta,
        **run_kwargs,
    )
