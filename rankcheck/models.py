"""Data shapes shared by the fetcher, the matching engine and the orchestrator."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from . import config


@dataclass(frozen=True)
class QueryTask:
    keyword: str
    brand_name: str
    branch_name: str


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class GeoGridSpec:
    center_lat: float
    center_lng: float
    radius_km: float = config.DEFAULT_GRID_RADIUS_KM
    grid_size: int = config.DEFAULT_GRID_SIZE


@dataclass(frozen=True)
class LocaleOptions:
    country: str = config.DEFAULT_COUNTRY
    language: str = config.DEFAULT_LANGUAGE
    device_type: str = config.DEFAULT_DEVICE_TYPE


@dataclass(frozen=True)
class ListingObservation:
    """One classified listing, or the no-match sentinel when rank_position is None."""

    keyword: str
    brand_name: str
    branch_name: str
    title: Optional[str]
    address: Optional[str] = None
    rating: Optional[float] = None
    category: Optional[str] = None
    rank_position: Optional[int] = None
    is_local_pack: bool = False
    local_pack_position: Optional[int] = None
    brand_match: bool = False
    device_type: Optional[str] = None
    source_latitude: Optional[float] = None
    source_longitude: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    page: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_sentinel(self) -> bool:
        return self.rank_position is None

    def to_dict(self, include_raw: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        if not include_raw:
            data.pop("raw", None)
        return data


def no_match_sentinel(task: QueryTask, device_type: Optional[str] = None) -> ListingObservation:
    return ListingObservation(
        keyword=task.keyword,
        brand_name=task.brand_name,
        branch_name=task.branch_name,
        title=config.NO_MATCH_TITLE,
        rank_position=None,
        brand_match=False,
        device_type=device_type,
        raw={"note": "No brand match found"},
    )


@dataclass
class RunProgress:
    current_query: str
    total_queries: int
    processed_queries: int
    queries_per_second: float
    estimated_seconds_remaining: int
    api_calls_made: int
    current_page: int
    type: str = "progress"

    @property
    def progress_percent(self) -> int:
        if self.total_queries <= 0:
            return 0
        return round(self.processed_queries / self.total_queries * 100)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["progress_percent"] = self.progress_percent
        return data


RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"
RUN_STATUS_CANCELLED = "cancelled"


@dataclass
class RunResult:
    observations: List[ListingObservation]
    total_queries: int
    api_calls_made: int
    elapsed_seconds: float
    status: str = RUN_STATUS_COMPLETED
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    processed_queries: int = 0

    @property
    def total_results(self) -> int:
        return len(self.observations)

    @property
    def total_brand_matches(self) -> int:
        return sum(1 for o in self.observations if o.brand_match)

    @property
    def total_local_pack_matches(self) -> int:
        return sum(1 for o in self.observations if o.brand_match and o.is_local_pack)

    @property
    def brand_matches(self) -> List[ListingObservation]:
        return [o for o in self.observations if o.brand_match]

    def summary(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "total_queries": self.total_queries,
            "processed_queries": self.processed_queries,
            "total_results": self.total_results,
            "total_brand_matches": self.total_brand_matches,
            "total_local_pack_matches": self.total_local_pack_matches,
            "api_calls_made": self.api_calls_made,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
            "error_kind": self.error_kind,
            "error_message": self.error_message,
        }
