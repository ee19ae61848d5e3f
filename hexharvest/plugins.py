"""
Static plugin registry (providers and visualizers) with dependency ordering,
and the visualizer contract.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from .errors import ConfigurationError, PluginDependencyError

logger = logging.getLogger(__name__)


class PluginRegistry:
    """Plugin classes keyed by their ``id``.

    A plugin class declares ``id``, ``version`` and ``dependencies`` (ids of
    plugins that must load before it).
    """

    def __init__(self, plugins: Iterable[type] = ()):
        self._plugins: Dict[str, type] = {}
        for plugin in plugins:
            self.register(plugin)

    def register(self, plugin: type) -> type:
        plugin_id = getattr(plugin, "id", None)
        if not plugin_id:
            raise ConfigurationError(f"plugin {plugin.__name__} has no id")
        if plugin_id in self._plugins and self._plugins[plugin_id] is not plugin:
            raise ConfigurationError(f"duplicate plugin id {plugin_id!r}")
        self._plugins[plugin_id] = plugin
        return plugin

    def __contains__(self, plugin_id: str) -> bool:
        return plugin_id in self._plugins

    def __getitem__(self, plugin_id: str) -> type:
        return self._plugins[plugin_id]

    def ids(self) -> List[str]:
        return list(self._plugins)

    def load_order(self, selected: Optional[Iterable[str]] = None) -> List[str]:
        """Topological order (Kahn) of ``selected`` plus everything they depend on."""
        wanted = list(selected) if selected is not None else list(self._plugins)
        nodes = set()
        stack = list(wanted)
        while stack:
            plugin_id = stack.pop()
            if plugin_id in nodes:
                continue
            if plugin_id not in self._plugins:
                raise PluginDependencyError(f"unknown plugin {plugin_id!r}")
            nodes.add(plugin_id)
            for dep in self._plugins[plugin_id].dependencies:
                if dep not in self._plugins:
                    raise PluginDependencyError(f"plugin {plugin_id!r} depends on missing plugin {dep!r}")
                stack.append(dep)

        indegree = {n: 0 for n in nodes}
        dependents: Dict[str, List[str]] = {n: [] for n in nodes}
        for n in nodes:
            for dep in self._plugins[n].dependencies:
                indegree[n] += 1
                dependents[dep].append(n)

        ready = deque(sorted(n for n, d in indegree.items() if d == 0))
        order = []
        while ready:
            n = ready.popleft()
            order.append(n)
            for m in sorted(dependents[n]):
                indegree[m] -= 1
                if indegree[m] == 0:
                    ready.append(m)
        if len(order) != len(nodes):
            cyclic = sorted(n for n in nodes if n not in order)
            raise PluginDependencyError(f"circular plugin dependencies: {', '.join(cyclic)}")
        return order

    def load(self, selected: Optional[Iterable[str]] = None, **kwargs: Any) -> Dict[str, Any]:
        """Instantiate plugins in dependency order."""
        instances = {}
        for plugin_id in self.load_order(selected):
            instances[plugin_id] = self._plugins[plugin_id](**kwargs)
            logger.debug("Loaded plugin %s v%s", plugin_id, self._plugins[plugin_id].version)
        return instances


class Visualizer(ABC):
    id: str = "visualizer"
    name: str = "Visualizer"
    version: str = "1.0.0"
    dependencies: Tuple[str, ...] = ()
    options_model: Type[BaseModel] = BaseModel

    @classmethod
    def option_schema(cls) -> Dict[str, Any]:
        return cls.options_model.model_json_schema()

    def check_options(self, options: Optional[Any] = None) -> BaseModel:
        if isinstance(options, self.options_model):
            return options
        try:
            return self.options_model.model_validate(options or {})
        except ValidationError as e:
            raise ConfigurationError(f"invalid options for visualizer {self.id!r}: {e}") from e

    @abstractmethod
    def render(self, crawl_result: Dict[int, Dict[str, Dict[str, Any]]], mesh: Any,
               options: BaseModel) -> Dict[str, Dict[str, Any]]:
        """Return one FeatureCollection per category."""


def render_layers(visualizers: Mapping[str, Visualizer], state: Any,
                  options: Optional[Mapping[str, Any]] = None) -> Dict[str, Dict[str, Dict[str, Any]]]:
    """Run every selected visualizer over a finished session."""
    options = options or {}
    crawl_result = state.crawl_result()
    layers = {}
    for vis_id, visualizer in visualizers.items():
        checked = visualizer.check_options(options.get(vis_id))
        layers[vis_id] = visualizer.render(crawl_result, state.target.mesh, checked)
        logger.info("Rendered %s: %d layers", vis_id, len(layers[vis_id]))
    return layers
