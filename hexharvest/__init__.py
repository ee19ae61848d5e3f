"""hexharvest: hexagonal-grid crawler for geo-tagged content."""

import logging

from .categories import Category, assign_palette, parse_category_spec
from .errors import (ConfigurationError, HarvestError, MeshDegeneracy, PluginDependencyError, ProviderError,
                     ProviderFatalError, ProviderTransientError, SessionDisposedRace)
from .geomesh import GeoMesh, HexCell, TriangleCell, bbox_size, build_mesh
from .plugins import PluginRegistry, Visualizer, render_layers
from .scheduler import CrawlScheduler
from .session import SessionRegistry, SessionState, Target, build_target
from .settings import Settings, load_api_key, load_settings

__version__ = "0.1.0"

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level=logging.INFO, fmt: str = LOG_FORMAT):
    logging.basicConfig(level=level, format=fmt)
