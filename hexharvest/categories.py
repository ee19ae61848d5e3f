"""
Category spec parsing and palette assignment.

Spec grammar: ``label=term1,term2|label2#RRGGBB=term3``. A segment with no
``=`` uses its first term as the label.
"""

import colorsys
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import ConfigurationError

HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")
GOLDEN_RATIO = 0.618033988749895


@dataclass
class Category:
    name: str
    terms: List[str] = field(default_factory=list)
    color: Optional[str] = None
    override: Optional[str] = None

    @property
    def query(self) -> str:
        return ",".join(self.terms)


def parse_category_spec(spec: str) -> Dict[str, Category]:
    if not spec or not spec.strip():
        raise ConfigurationError("category spec is empty")
    categories: Dict[str, Category] = {}
    for segment in spec.split("|"):
        segment = segment.strip()
        if not segment:
            continue
        if "=" in segment:
            label, raw_terms = segment.split("=", 1)
        else:
            label, raw_terms = segment.split(",")[0], segment

        override = None
        if "#" in label:
            label, color = label.split("#", 1)
            color = "#" + color.strip()
            if not HEX_COLOR.match(color):
                raise ConfigurationError(f"invalid color override {color!r} in {segment!r}")
            override = color.lower()

        label = label.strip()
        terms = [t.strip() for t in raw_terms.split(",") if t.strip()]
        if not label or not terms:
            raise ConfigurationError(f"invalid category segment: {segment!r}")
        if label in categories:
            raise ConfigurationError(f"duplicate category label: {label!r}")
        categories[label] = Category(name=label, terms=terms, override=override)
    if not categories:
        raise ConfigurationError("category spec has no categories")
    return categories


def _to_hex(r: float, g: float, b: float) -> str:
    return "#{:02x}{:02x}{:02x}".format(*(max(0, min(255, round(v * 255))) for v in (r, g, b)))


def _shade(color: str, delta: float) -> str:
    r, g, b = (int(color[i:i + 2], 16) / 255 for i in (1, 3, 5))
    h, light, s = colorsys.rgb_to_hls(r, g, b)
    return _to_hex(*colorsys.hls_to_rgb(h, max(0.0, min(1.0, light + delta)), s))


def generate_palette(count: int, saturation: float = 0.65, lightness: float = 0.5) -> List[str]:
    """``count`` well separated colors (golden-ratio hue stepping)."""
    colors = []
    hue = 0.0
    for _ in range(count):
        colors.append(_to_hex(*colorsys.hls_to_rgb(hue, lightness, saturation)))
        hue = (hue + GOLDEN_RATIO) % 1.0
    return colors


def assign_palette(categories: Dict[str, Category]) -> Dict[str, Dict[str, str]]:
    generated = iter(generate_palette(len(categories)))
    palette = {}
    for name, category in categories.items():
        color = next(generated)
        category.color = category.override or color
        palette[name] = {
            "color": category.color,
            "darken": _shade(category.color, -0.2),
            "brighten": _shade(category.color, 0.2),
        }
    return palette
