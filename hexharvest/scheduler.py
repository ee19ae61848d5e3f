"""
Crawl scheduler: fans a session out into hex x category tasks, runs them on
a shared worker pool behind each provider's rate limiter, and feeds every
completion back through one core thread.
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .errors import ConfigurationError, SessionDisposedRace
from .plugins import PluginRegistry
from .providers import BUILTIN_PROVIDERS
from .providers.base import ContinuationState, Provider, ProviderOptions, ProviderResult
from .session import SessionRegistry, SessionState
from .settings import Settings, load_api_key, load_settings

logger = logging.getLogger(__name__)

_STOP = object()

ProgressCallback = Callable[[str, int, Dict[int, Dict[str, Any]]], None]
FinishCallback = Callable[[str, SessionState], None]


@dataclass(frozen=True)
class CrawlTask:
    session_id: str
    generation: int
    provider_id: str
    hex_id: int
    category: str
    state: ContinuationState


class CrawlScheduler:
    def __init__(self, registry: SessionRegistry, providers: Optional[PluginRegistry] = None,
                 settings: Optional[Settings] = None, on_progress: Optional[ProgressCallback] = None,
                 on_finish: Optional[FinishCallback] = None):
        self.registry = registry
        self.settings = settings or load_settings()
        self.plugins = providers or PluginRegistry(BUILTIN_PROVIDERS)
        self.providers: Dict[str, Provider] = self.plugins.load()
        self.on_progress = on_progress
        self.on_finish = on_finish
        self.executor: Optional[ThreadPoolExecutor] = None
        self._messages = queue.Queue()
        self._core: Optional[threading.Thread] = None
        self.stats = {
            'tasks_dispatched': 0,
            'tasks_completed': 0,
            'results_dropped': 0,
            'items_added': 0,
        }
        self.stats_lock = threading.Lock()

    # Lifecycle

    def start(self) -> "CrawlScheduler":
        if self._core is not None:
            return self
        self.executor = ThreadPoolExecutor(max_workers=self.settings.pool_size, thread_name_prefix="harvest-worker")
        self._core = threading.Thread(target=self._run_core, name="harvest-core", daemon=True)
        self._core.start()
        logger.info("Scheduler started with %d workers", self.settings.pool_size)
        return self

    def stop(self, wait: bool = True):
        if self._core is None:
            return
        self._messages.put(_STOP)
        if wait:
            self._core.join()
        for provider in self.providers.values():
            provider.close()
        self.executor.shutdown(wait=wait)
        self._core = None
        logger.info("Scheduler stopped")

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False

    def get_stats(self) -> Dict[str, int]:
        with self.stats_lock:
            return self.stats.copy()

    def update_stats(self, **kwargs: int):
        with self.stats_lock:
            for key, value in kwargs.items():
                if key in self.stats:
                    self.stats[key] += value

    # Public API

    def provider(self, provider_id: str) -> Provider:
        try:
            return self.providers[provider_id]
        except KeyError:
            raise ConfigurationError(f"unknown provider {provider_id!r}, available: {sorted(self.providers)}") from None

    def resolve_options(self, provider: Provider, options: Optional[Any] = None) -> ProviderOptions:
        """Validate options, reading the API key file when the provider needs a key and none was given."""
        if isinstance(options, ProviderOptions):
            return provider.check_options(options)
        values = dict(options or {})
        if "api_key" in provider.options_model.model_fields and not values.get("api_key"):
            values["api_key"] = load_api_key(provider.id, self.settings.api_key_dir)
        return provider.check_options(values)

    def start_crawl(self, session_id: str, provider_id: str, options: Optional[Any] = None) -> int:
        """Validate options and queue the fan-out. Returns the number of initial tasks."""
        if self._core is None:
            raise RuntimeError("scheduler is not running; call start() first")
        provider = self.provider(provider_id)
        checked = self.resolve_options(provider, options)
        state = self.registry.get(session_id)
        if state is None:
            raise ConfigurationError(f"session {session_id} has no target")
        if state.provider_id is not None:
            raise ConfigurationError(f"session {session_id} already crawled with {state.provider_id}; "
                                     "set a new target to crawl again")
        self._messages.put(("start", session_id, state.generation, provider_id, checked))
        return state.target.task_count

    def wait_finished(self, session_id: str, timeout: Optional[float] = None) -> bool:
        state = self.registry.get(session_id)
        if state is None:
            return False
        return state.done.wait(timeout)

    # Core thread

    def _run_core(self):
        while True:
            message = self._messages.get()
            if message is _STOP:
                return
            kind = message[0]
            try:
                if kind == "start":
                    self._fan_out(*message[1:])
                elif kind == "done":
                    self._handle_completion(*message[1:])
            except SessionDisposedRace as e:
                self.update_stats(results_dropped=1)
                logger.warning("Dropping %s message: %s", kind, e)
            except Exception:
                logger.exception("Core loop failed handling %s message", kind)

    def _fan_out(self, session_id: str, generation: int, provider_id: str, options: ProviderOptions):
        state = self.registry.require(session_id, generation)
        if state.provider_id is not None:
            logger.warning("Session %s already crawled with %s; set a new target to crawl again",
                           session_id, state.provider_id)
            return
        state.provider_id = provider_id
        state.options = options
        provider = self.providers[provider_id]
        logger.info("Crawl started: session=%s provider=%s hexes=%d categories=%d",
                    session_id, provider_id, len(state.target.mesh.hexes), len(state.target.categories))
        for hex_id in state.target.mesh.hexes:
            for name, category in state.target.categories.items():
                self._dispatch(state, hex_id, name, provider.initial_state(category, options))
        self._check_finished(state)

    def _dispatch(self, state: SessionState, hex_id: int, category: str, continuation: ContinuationState):
        provider = self.providers[state.provider_id]
        state.register_term(hex_id, category, continuation.term_id)
        state.in_flight += 1
        task = CrawlTask(state.session_id, state.generation, state.provider_id, hex_id, category, continuation)
        mesh = state.target.mesh
        provider.rate_limiter(state.options).schedule(
            self.executor, self._execute, provider, state.options, mesh.hexes[hex_id], mesh.triangles_in(hex_id),
            state.target.categories[category], task)
        self.update_stats(tasks_dispatched=1)

    def _execute(self, provider: Provider, options: ProviderOptions, hex_cell, triangles, category, task: CrawlTask):
        result = provider.run(options, hex_cell, triangles, hex_cell.bbox, category, task.state)
        self._messages.put(("done", task, result))

    def _handle_completion(self, task: CrawlTask, result: ProviderResult):
        state = self.registry.require(task.session_id, task.generation)
        state.in_flight -= 1
        self.update_stats(tasks_completed=1)
        merged = state.apply_result(task.hex_id, task.category, result)
        self.update_stats(items_added=merged.added)

        cp = state.category(task.hex_id, task.category)
        logger.info("hex=%s category=%s term=%s dup=%d out=%d in=%d crawled=%d/%d%s",
                    task.hex_id, task.category, result.term_id, merged.duplicates, merged.outside,
                    merged.added, cp.crawled, cp.total, " (error: %s)" % result.error.message if result.error else "")

        for continuation in result.next_states:
            self._dispatch(state, task.hex_id, task.category, continuation)

        if self.on_progress is not None:
            try:
                self.on_progress(task.session_id, task.hex_id, state.progress_snapshot(task.hex_id))
            except Exception:
                logger.exception("on_progress callback failed for session %s", task.session_id)
        self._check_finished(state)

    def _check_finished(self, state: SessionState):
        if state.finished or not state.is_complete():
            return
        state.finished = True
        logger.info("Crawl finished: session=%s provider=%s", state.session_id, state.provider_id)
        if self.on_finish is not None:
            try:
                self.on_finish(state.session_id, state)
            except Exception:
                logger.exception("on_finish callback failed for session %s", state.session_id)
        state.done.set()
