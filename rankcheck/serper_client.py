"""Serper Places client: one upstream call per results page, plus response parsing."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from . import config
from .geo import format_location_bias
from .http import HttpClient, RequestBudget
from .models import GeoPoint

logger = logging.getLogger(__name__)


class SerperPlacesClient:
    def __init__(
        self,
        http_client: HttpClient,
        budget: Optional[RequestBudget] = None,
        url: str = config.SERPER_PLACES_URL,
    ) -> None:
        self.http = http_client
        self.budget = budget
        self.url = url

    def set_budget(self, budget: RequestBudget) -> None:
        self.budget = budget

    def fetch_page(
        self,
        query: str,
        country: str,
        language: str,
        page: int,
        device_type: str,
        point: Optional[GeoPoint] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch one page of listings. An empty list means there are no more results."""
        # Read on every call so a key removed mid-run fails the next fetch.
        api_key = config.get_api_key()
        body = build_places_body(query, country, language, page, device_type, point)
        if self.budget is not None:
            self.budget.consume()
        logger.debug("Serper places request: q=%s page=%s ll=%s", query, page, body.get("ll"))
        response = self.http.post_json(self.url, body, headers={"X-API-KEY": api_key})
        return parse_places_response(response)


def build_places_body(
    query: str,
    country: str,
    language: str,
    page: int,
    device_type: str,
    point: Optional[GeoPoint] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "q": query,
        "gl": country,
        "hl": language,
        "page": page,
        "device": device_type,
    }
    if point is not None:
        body["ll"] = format_location_bias(point)
    return body


# Adapter/mapper for Serper places fields

def parse_places_response(response: Dict[str, Any]) -> List[Dict[str, Any]]:
    places = response.get("places") or []
    parsed: List[Dict[str, Any]] = []
    for p in places:
        if not isinstance(p, dict):
            continue
        parsed.append(
            {
                "title": p.get("title") or "",
                "address": p.get("address"),
                "rating": _safe_float(p.get("rating")),
                "rating_count": _safe_int(p.get("ratingCount")),
                "category": p.get("category"),
                "latitude": _safe_float(p.get("latitude")),
                "longitude": _safe_float(p.get("longitude")),
                "cid": p.get("cid"),
                "raw": p,
            }
        )
    return parsed


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _safe_int(value: Any) -> Optional[int]:
    try:
        if value is None:
            return None
        return int(value)
    except (TypeError, ValueError):
        return None
