"""Provider contract.

A provider answers one page of a (hex, category, continuation) query and
reports how to continue. Failures are data, not exceptions: ``Provider.run``
always returns exactly one :class:`ProviderResult`, so the scheduler can
retire every task it dispatched.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

import requests
from pydantic import BaseModel, Field, ValidationError

from ..categories import Category
from ..errors import ConfigurationError, ProviderError, ProviderFatalError, ProviderTransientError
from ..geomesh import HexCell, TriangleCell, hex_contains, locate_triangle
from ..throttle import RateLimiter

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 502, 503, 504}

T = TypeVar("T")


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive range of unix seconds."""
    min: int
    max: int


@dataclass
class ContinuationState:
    term_id: str = "a"
    window: Optional[TimeWindow] = None
    params: Dict[str, Any] = field(default_factory=dict)

    def advance(self, window: Optional[TimeWindow] = None, **params: Any) -> "ContinuationState":
        """Same lineage, narrowed window and/or updated params."""
        return replace(self, window=window or self.window, params={**self.params, **params})

    def child(self, suffix: str, window: Optional[TimeWindow] = None, **params: Any) -> "ContinuationState":
        return ContinuationState(term_id=self.term_id + suffix, window=window or self.window,
                                 params={**self.params, **params})


@dataclass
class ErrorDescriptor:
    message: str
    code: Optional[str] = None


@dataclass
class ProviderResult:
    term_id: str
    items: List[Dict[str, Any]] = field(default_factory=list)
    ids: List[str] = field(default_factory=list)
    outside_count: int = 0
    remaining: int = 0
    final: bool = True
    next_states: List[ContinuationState] = field(default_factory=list)
    error: Optional[ErrorDescriptor] = None

    @classmethod
    def failure(cls, term_id: str, message: str, code: Optional[str] = None) -> "ProviderResult":
        return cls(term_id=term_id, final=True, remaining=0, error=ErrorDescriptor(message, code))


class ProviderOptions(BaseModel):
    throttle_max_concurrent: int = Field(default=1, ge=1)
    throttle_min_time_ms: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=4, ge=1)
    backoff_base_s: float = Field(default=0.5, ge=0)
    timeout_s: float = Field(default=25.0, gt=0)


class Provider(ABC):
    id: str = "base"
    name: str = "Provider"
    version: str = "1.0.0"
    dependencies: Tuple[str, ...] = ()
    options_model: Type[ProviderOptions] = ProviderOptions

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self.sleep = sleep
        self._limiter = None
        self._limiter_key = None

    @classmethod
    def option_schema(cls) -> Dict[str, Any]:
        return cls.options_model.model_json_schema()

    def check_options(self, options: Optional[Any] = None) -> ProviderOptions:
        if isinstance(options, self.options_model):
            return options
        try:
            return self.options_model.model_validate(options or {})
        except ValidationError as e:
            raise ConfigurationError(f"invalid options for provider {self.id!r}: {e}") from e

    def rate_limiter(self, options: ProviderOptions) -> RateLimiter:
        """The provider's single limiter, sized by the first options that reach it.

        Every session shares it, so calls already running keep counting
        against ``max_concurrent``. Later throttle settings are ignored until
        :meth:`close`.
        """
        key = (options.throttle_max_concurrent, options.throttle_min_time_ms)
        if self._limiter is None:
            self._limiter = RateLimiter(max_concurrent=options.throttle_max_concurrent,
                                        min_time=options.throttle_min_time_ms / 1000.0,
                                        name=self.id)
            self._limiter_key = key
        elif self._limiter_key != key:
            logger.warning("[%s] throttle %s ignored, limiter already running with %s",
                           self.id, key, self._limiter_key)
        return self._limiter

    def close(self):
        if self._limiter is not None:
            self._limiter.close()
            self._limiter = None
            self._limiter_key = None

    def initial_state(self, category: Category, options: ProviderOptions) -> ContinuationState:
        return ContinuationState(term_id="a")

    @abstractmethod
    def search(self, options: ProviderOptions, hex_cell: HexCell, triangles: Sequence[TriangleCell],
               bbox: Sequence[float], category: Category, state: ContinuationState) -> ProviderResult:
        """One page of results for ``category`` inside ``hex_cell``."""

    def run(self, options: ProviderOptions, hex_cell: HexCell, triangles: Sequence[TriangleCell],
            bbox: Sequence[float], category: Category, state: ContinuationState) -> ProviderResult:
        """Worker-boundary entry point: never raises."""
        try:
            return self.search(options, hex_cell, triangles, bbox, category, state)
        except ProviderError as e:
            logger.error("[%s] Fatal error hex=%s category=%s term=%s: %s",
                         self.id, hex_cell.hex_id, category.name, state.term_id, e)
            return ProviderResult.failure(state.term_id, str(e), e.code)
        except Exception as e:
            logger.exception("[%s] Unexpected error hex=%s category=%s term=%s",
                             self.id, hex_cell.hex_id, category.name, state.term_id)
            return ProviderResult.failure(state.term_id, str(e) or type(e).__name__, type(e).__name__)

    def fetch_with_retry(self, fetcher: Callable[[], T], options: ProviderOptions) -> T:
        return fetch_with_retry(fetcher, max_attempts=options.max_attempts,
                                base_delay=options.backoff_base_s, label=self.id, sleep=self.sleep)


def fetch_with_retry(fetcher: Callable[[], T], max_attempts: int = 4, base_delay: float = 0.5,
                     label: str = "provider", sleep: Callable[[float], None] = time.sleep) -> T:
    """Call ``fetcher``, retrying transient failures with exponential backoff."""
    attempt = 0
    while True:
        try:
            return fetcher()
        except ProviderTransientError as e:
            attempt += 1
            if attempt >= max_attempts:
                raise ProviderFatalError(f"retries exhausted after {attempt} attempts: {e}", e.code) from e
            wait = base_delay * (2 ** (attempt - 1))
            logger.warning("[%s] fetch attempt %d failed (%s). Retrying in %.2fs.", label, attempt, e, wait)
            sleep(wait)


def request_json(method: str, url: str, timeout: float, session: Any = None, **kwargs: Any) -> Any:
    """HTTP call mapped onto the transient/fatal taxonomy."""
    http = session or requests
    try:
        response = http.request(method, url, timeout=timeout, **kwargs)
    except requests.exceptions.Timeout as e:
        raise ProviderTransientError(f"timeout: {e}", "ETIMEDOUT") from e
    except requests.exceptions.ConnectionError as e:
        raise ProviderTransientError(f"connection error: {e}", "ECONNRESET") from e
    except requests.exceptions.RequestException as e:
        raise ProviderFatalError(f"request failed: {e}", type(e).__name__) from e

    if response.status_code in RETRYABLE_STATUS:
        raise ProviderTransientError(f"HTTP {response.status_code}", str(response.status_code))
    if not response.ok:
        raise ProviderFatalError(f"HTTP {response.status_code}: {response.text[:200]}", str(response.status_code))
    try:
        return response.json()
    except ValueError as e:
        raise ProviderFatalError(f"invalid JSON response: {e}", "EJSON") from e


def localize(records: Iterable[Tuple[float, float, str, Dict[str, Any]]], hex_cell: HexCell,
             triangles: Sequence[TriangleCell], provider_id: str) -> Tuple[List[Dict[str, Any]], List[str], int]:
    """Keep records inside the exact hex polygon and tag each with its triangle.

    ``records`` yields ``(lng, lat, item_id, properties)``.
    Returns ``(features, ids, outside_count)``.
    """
    features = []
    ids = []
    outside = 0
    for lng, lat, item_id, properties in records:
        if not hex_contains(hex_cell, lng, lat):
            outside += 1
            continue
        features.append({
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [lng, lat]},
            "properties": {
                **properties,
                "id": item_id,
                "harvest_provider": provider_id,
                "harvest_hexId": hex_cell.hex_id,
                "harvest_triangleId": locate_triangle(lng, lat, triangles),
            },
        })
        ids.append(item_id)
    return features, ids, outside
