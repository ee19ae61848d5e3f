"""OpenStreetMap features through the Overpass API.

Each category term is a query spec ``[node|way|relation:]key[op value]``
where ``op`` is one of ``=``, ``!=``, ``=~``, ``!~``. All terms of a category
go into a single union query, so every task is final after one call.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from pydantic import Field, field_validator

from ..categories import Category
from ..errors import ProviderFatalError
from ..geomesh import HexCell, TriangleCell
from .base import ContinuationState, Provider, ProviderOptions, ProviderResult, localize, request_json

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://overpass-api.de/api/interpreter"
DEFAULT_USER_AGENT = "hexharvest-overpass"
ELEMENT_TYPES = ("node", "way", "relation")
OPERATORS = re.compile(r"(!=|=~|!~|=)")
DISPLAY_NAME_KEYS = ("name", "name:en", "brand", "operator", "amenity", "shop")


def _escape(value: str) -> str:
    return value.replace('"', '\\"')


def parse_query_spec(spec: str) -> Tuple[Tuple[str, ...], str]:
    """``"way:highway=primary"`` -> ``(("way",), '["highway"="primary"]')``."""
    spec = (spec or "").strip()
    if not spec:
        raise ValueError("Overpass query spec is empty")
    types = ELEMENT_TYPES
    match = re.match(r"^(node|way|relation)\s*:(.+)$", spec, re.IGNORECASE)
    if match:
        types = (match.group(1).lower(),)
        spec = match.group(2).strip()

    op = OPERATORS.search(spec)
    if not op:
        if not spec:
            raise ValueError("query spec has no key")
        return types, f'["{_escape(spec)}"]'
    key = spec[:op.start()].strip()
    value = spec[op.end():].strip()
    if not key:
        raise ValueError(f"invalid query spec: {spec!r}")
    if not value:
        raise ValueError(f"query spec missing value: {spec!r}")
    return types, f'["{_escape(key)}"{op.group(1)}"{_escape(value)}"]'


def build_query(terms: Sequence[str], bbox: Sequence[float], timeout_s: float) -> str:
    min_lon, min_lat, max_lon, max_lat = (float(v) for v in bbox)
    if min_lon >= max_lon or min_lat >= max_lat:
        raise ValueError(f"degenerate bbox: {list(bbox)}")
    clause = f"({min_lat},{min_lon},{max_lat},{max_lon})"
    statements = []
    for term in terms:
        types, selector = parse_query_spec(term)
        statements.extend(f"{t}{selector}{clause};" for t in types)
    return f"[out:json][timeout:{max(1, int(timeout_s))}];({''.join(statements)});out center tags;"


def element_coordinates(element: Dict[str, Any]) -> Optional[Tuple[float, float]]:
    if isinstance(element.get("lon"), (int, float)) and isinstance(element.get("lat"), (int, float)):
        return float(element["lon"]), float(element["lat"])
    center = element.get("center") or {}
    if isinstance(center.get("lon"), (int, float)) and isinstance(center.get("lat"), (int, float)):
        return float(center["lon"]), float(center["lat"])
    return None


def display_name(tags: Dict[str, Any]) -> Optional[str]:
    for key in DISPLAY_NAME_KEYS:
        if tags.get(key):
            return tags[key]
    return None


class OverpassOptions(ProviderOptions):
    endpoint: str = DEFAULT_ENDPOINT
    user_agent: str = DEFAULT_USER_AGENT
    timeout_s: float = Field(default=25.0, gt=0)
    max_attempts: int = Field(default=4, ge=1)
    backoff_base_s: float = Field(default=1.0, ge=0)
    throttle_max_concurrent: int = Field(default=1, ge=1)
    throttle_min_time_ms: int = Field(default=1500, ge=0)

    @field_validator("endpoint")
    @classmethod
    def valid_endpoint(cls, v: str) -> str:
        parsed = urlparse(v.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"endpoint must be an http(s) URL, got {v!r}")
        return v.strip()


class OverpassProvider(Provider):
    id = "overpass"
    name = "OpenStreetMap (Overpass)"
    version = "1.0.0"
    options_model = OverpassOptions

    def __init__(self, session: Any = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.session = session

    def fetch_elements(self, options: OverpassOptions, query: str) -> List[Dict[str, Any]]:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
            "User-Agent": options.user_agent,
        }
        data = self.fetch_with_retry(
            lambda: request_json("POST", options.endpoint, options.timeout_s, session=self.session,
                                 data={"data": query}, headers=headers),
            options)
        elements = data.get("elements") if isinstance(data, dict) else None
        if not isinstance(elements, list):
            raise ProviderFatalError("Overpass response missing elements array", "EFORMAT")
        return elements

    def search(self, options: OverpassOptions, hex_cell: HexCell, triangles: Sequence[TriangleCell],
               bbox: Sequence[float], category: Category, state: ContinuationState) -> ProviderResult:
        try:
            query = build_query(category.terms, bbox, options.timeout_s)
        except ValueError as e:
            raise ProviderFatalError(str(e), "EQUERY") from e
        elements = self.fetch_elements(options, query)

        records = []
        unlocated = 0
        for element in elements:
            coords = element_coordinates(element)
            if coords is None:
                unlocated += 1
                continue
            tags = element.get("tags") or {}
            item_id = f"{element.get('type')}/{element.get('id')}"
            records.append((coords[0], coords[1], item_id, {
                "osm_id": element.get("id"),
                "osm_type": element.get("type"),
                "name": display_name(tags),
                "tags": tags,
                "query": category.query,
                "osm_url": f"https://www.openstreetmap.org/{item_id}",
            }))
        features, ids, outside = localize(records, hex_cell, triangles, self.id)
        logger.debug("[overpass] hex=%s category=%s elements=%d inside=%d outside=%d",
                     hex_cell.hex_id, category.name, len(elements), len(features), outside + unlocated)
        return ProviderResult(term_id=state.term_id, items=features, ids=ids,
                              outside_count=outside + unlocated, remaining=0, final=True)
