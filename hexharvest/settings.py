"""Runtime settings.

Every field can be overridden with a ``HEXHARVEST_<FIELD>`` environment
variable, e.g. ``HEXHARVEST_POOL_SIZE=4``. Explicit keyword overrides passed
to :func:`load_settings` win over the environment.
"""

import os
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError

ENV_PREFIX = "HEXHARVEST_"

UNIT_TO_KM = {
    "kilometers": 1.0,
    "meters": 0.001,
    "miles": 1.609344,
    "nauticalmiles": 1.852,
    "feet": 0.0003048,
    "yards": 0.0009144,
}


def default_pool_size() -> int:
    return max(1, min(12, os.cpu_count() or 1))


class Settings(BaseModel):
    pool_size: int = Field(default_factory=default_pool_size, ge=1)
    default_cell_size: float = Field(default=0.5, ge=0)
    default_unit: str = "kilometers"
    auto_cell_count: int = Field(default=100, ge=1)
    max_cells: int = Field(default=5000, ge=1)
    edge_key_digits: int = Field(default=6, ge=1, le=12)
    api_key_dir: str = "."

    @field_validator("default_unit")
    @classmethod
    def known_unit(cls, v: str) -> str:
        unit = v.strip().lower()
        if unit not in UNIT_TO_KM:
            raise ValueError(f"unknown unit {v!r}, expected one of {sorted(UNIT_TO_KM)}")
        return unit


def load_settings(**overrides: Any) -> Settings:
    values = {}
    for name in Settings.model_fields:
        raw = os.environ.get(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = raw
    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigurationError(f"invalid settings: {e}") from e


def load_api_key(provider_id: str, directory: Optional[Union[str, Path]] = None) -> str:
    """Read the API key stored in ``.API_KEY.<provider_id>``."""
    path = Path(directory or ".") / f".API_KEY.{provider_id}"
    try:
        key = path.read_text(encoding="utf-8").strip()
    except OSError as e:
        raise ConfigurationError(f"cannot read API key file {path}: {e}") from e
    if not key:
        raise ConfigurationError(f"API key file is empty: {path}")
    return key
