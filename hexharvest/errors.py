"""
Error taxonomy shared by the mesh builder, providers and the scheduler
"""

from typing import Optional


class HarvestError(Exception):
    pass


class ConfigurationError(HarvestError):
    """Invalid boundary, cell size, category spec or provider options."""


class PluginDependencyError(ConfigurationError):
    """Plugin registry could not resolve a load order."""


class MeshDegeneracy(HarvestError):
    def __init__(self, message: str, hex_index: Optional[int] = None):
        super().__init__(message)
        self.hex_index = hex_index


class ProviderError(HarvestError):
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ProviderTransientError(ProviderError):
    """Timeout, connection reset or throttling response. Safe to retry."""


class ProviderFatalError(ProviderError):
    """Non-retriable failure, or retries exhausted."""


class SessionDisposedRace(HarvestError):
    def __init__(self, session_id: str, generation: int):
        super().__init__(f"session {session_id} (generation {generation}) is gone")
        self.session_id = session_id
        self.generation = generation
