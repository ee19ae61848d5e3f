"""Google Places Text Search provider.

Each term of a category is a query variant. A variant pages through up to
``max_pages`` result pages on its own term id; the next variant continues as
the child lineage ``T+"a"``.
"""

import logging
import re
from typing import Any, Dict, Optional, Sequence

from pydantic import Field, field_validator

from ..categories import Category
from ..errors import ProviderFatalError, ProviderTransientError
from ..geomesh import HexCell, TriangleCell, haversine_km
from .base import ContinuationState, Provider, ProviderOptions, ProviderResult, localize, request_json

logger = logging.getLogger(__name__)

PLACES_TEXT_SEARCH_URL = "https://maps.googleapis.com/maps/api/place/textsearch/json"
GOOGLE_API_KEY = re.compile(r"^AIza[0-9A-Za-z_-]{10,}$")
NEXT_PAGE_DELAY_S = 2.2
MAX_RADIUS_M = 50000
TRANSIENT_STATUS = {"UNKNOWN_ERROR", "OVER_QUERY_LIMIT"}


class GmapOptions(ProviderOptions):
    api_key: str
    language: str = "en"
    max_pages: int = 3
    expected_per_hex: int = Field(default=60, ge=1)
    throttle_max_concurrent: int = Field(default=2, ge=1)
    throttle_min_time_ms: int = Field(default=500, ge=0)

    @field_validator("api_key")
    @classmethod
    def valid_key(cls, v: str) -> str:
        key = v.strip()
        if not GOOGLE_API_KEY.match(key):
            raise ValueError("Google API key must start with 'AIza'")
        return key

    @field_validator("max_pages")
    @classmethod
    def clamp_pages(cls, v: int) -> int:
        return max(1, min(3, v))

    @field_validator("language")
    @classmethod
    def default_language(cls, v: str) -> str:
        return v.strip() or "en"


def search_radius_m(hex_cell: HexCell) -> int:
    """Distance from the hex centroid to its farthest vertex, in meters."""
    center = hex_cell.centroid
    farthest = max(haversine_km(center, vertex) for vertex in hex_cell.polygon.exterior.coords)
    return int(max(1, min(MAX_RADIUS_M, round(farthest * 1000))))


class GmapProvider(Provider):
    id = "gmap"
    name = "Google Places"
    version = "1.0.0"
    options_model = GmapOptions

    def __init__(self, session: Any = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.session = session

    def initial_state(self, category: Category, options: GmapOptions) -> ContinuationState:
        return ContinuationState(term_id="a", params={"variant": 0, "page_index": 0, "page_token": None,
                                                      "accumulated": 0, "wait_s": 0.0})

    def build_params(self, options: GmapOptions, hex_cell: HexCell, bbox: Sequence[float], query: str,
                     page_token: Optional[str]) -> Dict[str, Any]:
        lng, lat = hex_cell.centroid
        min_lon, min_lat, max_lon, max_lat = bbox
        params = {
            "key": options.api_key,
            "query": query,
            "language": options.language,
            "location": f"{lat},{lng}",
            "radius": search_radius_m(hex_cell),
            "locationbias": f"rectangle:{min_lat},{min_lon}|{max_lat},{max_lon}",
        }
        if page_token:
            params["pagetoken"] = page_token
        return params

    def fetch_page(self, options: GmapOptions, params: Dict[str, Any]) -> Dict[str, Any]:
        def fetch():
            data = request_json("GET", PLACES_TEXT_SEARCH_URL, options.timeout_s, session=self.session,
                                params=params)
            status = data.get("status")
            if status in ("OK", "ZERO_RESULTS"):
                return data
            detail = f"{status}: {data['error_message']}" if data.get("error_message") else status
            # a fresh page token is rejected as INVALID_REQUEST until it becomes valid
            if status in TRANSIENT_STATUS or (status == "INVALID_REQUEST" and "pagetoken" in params):
                raise ProviderTransientError(detail or "Google Places error", status)
            raise ProviderFatalError(detail or "Google Places error", status)

        return self.fetch_with_retry(fetch, options)

    def search(self, options: GmapOptions, hex_cell: HexCell, triangles: Sequence[TriangleCell],
               bbox: Sequence[float], category: Category, state: ContinuationState) -> ProviderResult:
        variant = state.params.get("variant", 0)
        page_index = state.params.get("page_index", 0)
        accumulated = state.params.get("accumulated", 0)
        if variant >= len(category.terms):
            raise ProviderFatalError(f"query variant {variant} out of range for {category.name!r}", "EVARIANT")
        query = category.terms[variant]

        wait_s = state.params.get("wait_s") or 0
        if wait_s > 0:
            self.sleep(wait_s)
        data = self.fetch_page(options, self.build_params(options, hex_cell, bbox, query,
                                                          state.params.get("page_token")))

        places = data.get("results") or []
        records = []
        unlocated = 0
        for place in places:
            location = (place.get("geometry") or {}).get("location") or {}
            place_id = place.get("place_id")
            if not place_id:
                unlocated += 1
                continue
            if not isinstance(location.get("lat"), (int, float)) or not isinstance(location.get("lng"), (int, float)):
                unlocated += 1
                continue
            records.append((float(location["lng"]), float(location["lat"]), place_id, {
                "place_id": place_id,
                "name": place.get("name"),
                "formatted_address": place.get("formatted_address"),
                "rating": place.get("rating"),
                "user_ratings_total": place.get("user_ratings_total"),
                "price_level": place.get("price_level"),
                "business_status": place.get("business_status"),
                "types": place.get("types") or [],
                "text_query": query,
            }))
        features, ids, outside = localize(records, hex_cell, triangles, self.id)
        outside += unlocated
        logger.debug("[gmap] hex=%s category=%s query=%r total=%d inside=%d outside=%d",
                     hex_cell.hex_id, category.name, query, len(places), len(features), outside)

        accumulated += len(features)
        token = data.get("next_page_token")
        if token and page_index + 1 < options.max_pages:
            next_state = state.advance(page_token=token, page_index=page_index + 1,
                                       accumulated=accumulated, wait_s=NEXT_PAGE_DELAY_S)
            return ProviderResult(term_id=state.term_id, items=features, ids=ids, outside_count=outside,
                                  remaining=max(0, options.expected_per_hex - accumulated),
                                  final=False, next_states=[next_state])

        next_states = []
        if variant + 1 < len(category.terms):
            next_states.append(state.child("a", variant=variant + 1, page_index=0, page_token=None,
                                           accumulated=0, wait_s=0.0))
        return ProviderResult(term_id=state.term_id, items=features, ids=ids, outside_count=outside,
                              remaining=0, final=True, next_states=next_states)
