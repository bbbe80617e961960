"""Rank matching engine.

For one QueryTask this walks every search point (a single location-less point
when the geo grid is off) page by page until an empty page comes back, and
classifies each listing against the task's brand/branch signature.

Rank positions form one continuous stream per point across pages, starting
at 1 for every grid point. The ``query`` rank scope instead keeps one stream
for the whole task, continuing the numbering across grid points.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence

from . import config
from .models import GeoPoint, ListingObservation, LocaleOptions, QueryTask, no_match_sentinel
from .normalize import BrandSignature

logger = logging.getLogger(__name__)


class RunCancelledError(RuntimeError):
    pass


class PageFetcher(Protocol):
    def fetch_page(
        self,
        query: str,
        country: str,
        language: str,
        page: int,
        device_type: str,
        point: Optional[GeoPoint] = None,
    ) -> List[Dict[str, Any]]:
        ...


class CancelToken(Protocol):
    def is_set(self) -> bool:
        ...


@dataclass
class PageEvent:
    task: QueryTask
    point: Optional[GeoPoint]
    page: int
    listings: int
    api_calls_made: int


@dataclass
class MatchCounters:
    api_calls_made: int = 0
    pages_fetched: int = 0


class RankMatcher:
    def __init__(
        self,
        fetcher: PageFetcher,
        locale: LocaleOptions,
        points: Sequence[Optional[GeoPoint]] = (None,),
        rank_scope: Optional[str] = None,
        page_delay: Optional[float] = None,
        max_pages: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        cancel: Optional[CancelToken] = None,
        counters: Optional[MatchCounters] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        # None falls back to the config value at construction time.
        if rank_scope is None:
            rank_scope = config.RANK_SCOPE
        if page_delay is None:
            page_delay = config.PAGE_DELAY_SECONDS
        if max_pages is None:
            max_pages = config.MAX_PAGES_PER_POINT
        if rank_scope not in config.RANK_SCOPES:
            raise ValueError(f"rank_scope must be one of: {', '.join(config.RANK_SCOPES)}")
        if max_pages is not None and max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        self.fetcher = fetcher
        self.locale = locale
        self.points = list(points) or [None]
        self.rank_scope = rank_scope
        self.page_delay = max(0.0, float(page_delay))
        self.max_pages = max_pages
        self.sleep = sleep
        self.cancel = cancel
        self.counters = counters if counters is not None else MatchCounters()
        self.log = log or logger

    def iter_observations(
        self,
        task: QueryTask,
        on_page: Optional[Callable[[PageEvent], None]] = None,
    ) -> Iterator[ListingObservation]:
        """Yield observations for ``task`` in rank order, ending with a sentinel if nothing matched."""
        signature = BrandSignature(task.brand_name, task.branch_name)
        found_match = False
        rank = 1

        for point in self.points:
            if self.rank_scope == config.RANK_SCOPE_GRID_POINT:
                rank = 1
            page = 1
            while True:
                self._check_cancelled()
                listings = self.fetcher.fetch_page(
                    task.keyword,
                    self.locale.country,
                    self.locale.language,
                    page,
                    self.locale.device_type,
                    point,
                )
                self.counters.api_calls_made += 1
                self.counters.pages_fetched += 1
                if on_page is not None:
                    on_page(PageEvent(task, point, page, len(listings), self.counters.api_calls_made))
                if not listings:
                    break

                for listing in listings:
                    observation = self._classify(task, signature, listing, rank, point, page)
                    if observation.brand_match:
                        found_match = True
                        self._log_match(observation)
                    yield observation
                    rank += 1

                page += 1
                if self.max_pages is not None and page > self.max_pages:
                    self.log.info(
                        "Page cap reached for %r (max_pages=%s)", task.keyword, self.max_pages
                    )
                    break
                if self.page_delay:
                    self.sleep(self.page_delay)

        if not found_match:
            self.log.info("No brand match found for %r - adding sentinel row", task.keyword)
            yield no_match_sentinel(task, self.locale.device_type)

    def match_task(
        self,
        task: QueryTask,
        on_page: Optional[Callable[[PageEvent], None]] = None,
    ) -> List[ListingObservation]:
        return list(self.iter_observations(task, on_page=on_page))

    def _check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise RunCancelledError("Run cancelled by caller")

    def _classify(
        self,
        task: QueryTask,
        signature: BrandSignature,
        listing: Dict[str, Any],
        rank: int,
        point: Optional[GeoPoint],
        page: int,
    ) -> ListingObservation:
        title = listing.get("title") or ""
        is_local_pack = rank <= config.LOCAL_PACK_SIZE
        return ListingObservation(
            keyword=task.keyword,
            brand_name=task.brand_name,
            branch_name=task.branch_name,
            title=title,
            address=listing.get("address"),
            rating=listing.get("rating"),
            category=listing.get("category"),
            rank_position=rank,
            is_local_pack=is_local_pack,
            local_pack_position=rank if is_local_pack else None,
            brand_match=signature.matches(title),
            device_type=self.locale.device_type,
            source_latitude=point.latitude if point is not None else None,
            source_longitude=point.longitude if point is not None else None,
            latitude=listing.get("latitude"),
            longitude=listing.get("longitude"),
            page=page,
            raw=listing.get("raw") or {},
        )

    def _log_match(self, observation: ListingObservation) -> None:
        pack_info = (
            f" (Local Pack #{observation.local_pack_position})" if observation.is_local_pack else ""
        )
        grid_info = ""
        if observation.source_latitude is not None and observation.source_longitude is not None:
            grid_info = f" @ ({observation.source_latitude:.4f}, {observation.source_longitude:.4f})"
        self.log.info(
            "Brand match found at position %s%s%s: %r",
            observation.rank_position,
            pack_info,
            grid_info,
            observation.title,
        )
