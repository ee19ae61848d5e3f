"""Flickr photo search provider (``flickr.photos.search``)."""

import calendar
import logging
import re
import time
from datetime import datetime
from typing import Any, Dict, List, Literal, Sequence

from pydantic import Field, field_validator, model_validator

from ..bisection import PageSummary, TimeWindowBisection
from ..categories import Category
from ..errors import ProviderFatalError
from ..geomesh import HexCell, TriangleCell
from .base import ContinuationState, Provider, ProviderOptions, ProviderResult, TimeWindow, localize, request_json

logger = logging.getLogger(__name__)

FLICKR_REST_URL = "https://api.flickr.com/services/rest/"
FLICKR_API_KEY = re.compile(r"^[0-9a-f]{32}$")
FLICKR_EPOCH = 1072915200  # 2004-01-01
DEFAULT_EXTRAS = "date_upload,date_taken,owner_name,geo,url_s,tags"


def to_unix_seconds(value: Any) -> int:
    """Accept unix seconds, ``YYYY-MM-DD`` or ``YYYY-MM-DD HH:MM:SS`` (UTC)."""
    if isinstance(value, bool):
        raise ValueError(f"not a date: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if re.fullmatch(r"-?\d+", text):
        return int(text)
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
        try:
            return calendar.timegm(datetime.strptime(text, fmt).timetuple())
        except ValueError:
            continue
    raise ValueError(f"unrecognized date {value!r}, expected YYYY-MM-DD or unix seconds")


class FlickrOptions(ProviderOptions):
    api_key: str
    date_mode: Literal["upload", "taken"] = "upload"
    date_min: int = FLICKR_EPOCH
    date_max: int = Field(default_factory=lambda: int(time.time()))
    haste: bool = True
    split_pages: int = Field(default=4, ge=1)
    per_page: int = Field(default=250, ge=1, le=500)
    extras: str = DEFAULT_EXTRAS
    burst_skip_scale: float = Field(default=3600.0, gt=0)
    burst_skip_min: int = Field(default=360, ge=0)
    burst_skip_max: int = Field(default=12 * 3600, ge=0)
    throttle_max_concurrent: int = Field(default=4, ge=1)
    throttle_min_time_ms: int = Field(default=1000, ge=0)

    @field_validator("api_key")
    @classmethod
    def valid_key(cls, v: str) -> str:
        key = v.strip().lower()
        if not FLICKR_API_KEY.match(key):
            raise ValueError("Flickr API key must be 32 hexadecimal characters")
        return key

    @field_validator("date_min", "date_max", mode="before")
    @classmethod
    def parse_date(cls, v: Any) -> int:
        return to_unix_seconds(v)

    @model_validator(mode="after")
    def ordered_dates(self) -> "FlickrOptions":
        if self.date_min >= self.date_max:
            raise ValueError(f"date_min ({self.date_min}) must be earlier than date_max ({self.date_max})")
        if self.burst_skip_min > self.burst_skip_max:
            raise ValueError("burst_skip_min must not exceed burst_skip_max")
        return self


class FlickrProvider(Provider):
    id = "flickr"
    name = "Flickr"
    version = "1.1.0"
    options_model = FlickrOptions

    def __init__(self, session: Any = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.session = session

    def initial_state(self, category: Category, options: FlickrOptions) -> ContinuationState:
        return ContinuationState(term_id="a", window=TimeWindow(options.date_min, options.date_max))

    def strategy(self, options: FlickrOptions) -> TimeWindowBisection:
        return TimeWindowBisection(split_pages=options.split_pages, haste=options.haste,
                                   burst_skip_scale=options.burst_skip_scale,
                                   burst_skip_min=options.burst_skip_min,
                                   burst_skip_max=options.burst_skip_max)

    def build_params(self, options: FlickrOptions, bbox: Sequence[float], category: Category,
                     window: TimeWindow) -> Dict[str, Any]:
        prefix = "upload" if options.date_mode == "upload" else "taken"
        return {
            "method": "flickr.photos.search",
            "api_key": options.api_key,
            "bbox": ",".join(str(v) for v in bbox),
            "tags": category.query,
            "extras": options.extras,
            "sort": "date-posted-desc" if options.date_mode == "upload" else "date-taken-desc",
            f"min_{prefix}_date": window.min,
            f"max_{prefix}_date": window.max,
            "has_geo": 1,
            "per_page": options.per_page,
            "page": 1,
            "format": "json",
            "nojsoncallback": 1,
        }

    def fetch_page(self, options: FlickrOptions, params: Dict[str, Any]) -> Dict[str, Any]:
        data = self.fetch_with_retry(
            lambda: request_json("GET", FLICKR_REST_URL, options.timeout_s, session=self.session, params=params),
            options)
        if data.get("stat") != "ok":
            raise ProviderFatalError(data.get("message") or "Flickr API error", str(data.get("code", "")) or None)
        return data["photos"]

    def photo_time(self, photo: Dict[str, Any], date_mode: str) -> int:
        if date_mode == "taken":
            return to_unix_seconds(photo["datetaken"])
        return int(photo["dateupload"])

    def search(self, options: FlickrOptions, hex_cell: HexCell, triangles: Sequence[TriangleCell],
               bbox: Sequence[float], category: Category, state: ContinuationState) -> ProviderResult:
        window = state.window or TimeWindow(options.date_min, options.date_max)
        result = self.fetch_page(options, self.build_params(options, bbox, category, window))
        photos: List[Dict[str, Any]] = result.get("photo") or []

        features, ids, outside = localize(
            ((float(p["longitude"]), float(p["latitude"]), str(p["id"]), p) for p in photos),
            hex_cell, triangles, self.id)

        page = PageSummary(
            count=len(photos),
            total=int(result.get("total") or 0),
            pages=int(result.get("pages") or 0),
            per_page=options.per_page,
            timestamps=[self.photo_time(p, options.date_mode) for p in photos],
            authors={p.get("owner") for p in photos if p.get("owner")},
        )
        outcome = self.strategy(options).decide(state.advance(window=window), page)
        return ProviderResult(
            term_id=state.term_id,
            items=features,
            ids=ids,
            outside_count=outside,
            remaining=outcome.remaining,
            final=outcome.final,
            next_states=outcome.next_states,
        )
