"""
Hex mesh builder: h3 tessellation of a boundary, centroid-fan triangles and
cross-hex edge adjacency.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import h3
from shapely.geometry import Point, Polygon, box, mapping, shape
from shapely.geometry.base import BaseGeometry
from shapely.geometry.polygon import orient

from .errors import ConfigurationError, MeshDegeneracy
from .settings import UNIT_TO_KM, Settings

logger = logging.getLogger(__name__)

KM_PER_DEGREE = 111.32
EARTH_RADIUS_KM = 6371.0088

H3_RESOLUTIONS = {
    3:  {"name": "Region (Res 3)", "avg_edge_length_km": 68.979221790},
    4:  {"name": "Province (Res 4)", "avg_edge_length_km": 26.071759680},
    5:  {"name": "Vast (Res 5)", "avg_edge_length_km": 9.854090990},
    6:  {"name": "Large (Res 6)", "avg_edge_length_km": 3.724532667},
    7:  {"name": "Medium (Res 7)", "avg_edge_length_km": 1.406475763},
    8:  {"name": "Small (Res 8)", "avg_edge_length_km": 0.531414010},
    9:  {"name": "Very Small (Res 9)", "avg_edge_length_km": 0.200786148},
    10: {"name": "Tiny (Res 10)", "avg_edge_length_km": 0.075863783},
    11: {"name": "Micro (Res 11)", "avg_edge_length_km": 0.028663897},
    12: {"name": "Nano (Res 12)", "avg_edge_length_km": 0.010830188},
    13: {"name": "Pico (Res 13)", "avg_edge_length_km": 0.004092010},
}

MIN_H3_RESOLUTION = min(H3_RESOLUTIONS)
MAX_H3_RESOLUTION = max(H3_RESOLUTIONS)


@dataclass
class HexCell:
    hex_id: int
    polygon: Polygon
    triangle_ids: List[str] = field(default_factory=list)
    h3_index: Optional[str] = None

    @property
    def bbox(self) -> Tuple[float, float, float, float]:
        return self.polygon.bounds

    @property
    def centroid(self) -> Tuple[float, float]:
        c = self.polygon.centroid
        return c.x, c.y


@dataclass
class TriangleCell:
    triangle_id: str
    hex_id: int
    index: int
    polygon: Polygon
    cross_neighbors: List[str] = field(default_factory=list)
    neighbor_hex_ids: List[int] = field(default_factory=list)


@dataclass
class GeoMesh:
    hexes: Dict[int, HexCell] = field(default_factory=dict)
    triangles: Dict[str, TriangleCell] = field(default_factory=dict)
    resolution: Optional[int] = None
    cell_size_km: Optional[float] = None
    skipped: int = 0

    def __len__(self) -> int:
        return len(self.hexes)

    def triangles_in(self, hex_id: int) -> List[TriangleCell]:
        return [self.triangles[t] for t in self.hexes[hex_id].triangle_ids]

    def to_geojson(self) -> Dict[str, Any]:
        hex_features = [
            {
                "type": "Feature",
                "geometry": mapping(cell.polygon),
                "properties": {"hexId": cell.hex_id, "triIds": list(cell.triangle_ids)},
            }
            for cell in self.hexes.values()
        ]
        tri_features = [
            {
                "type": "Feature",
                "geometry": mapping(tri.polygon),
                "properties": {
                    "triangleId": tri.triangle_id,
                    "parentHexId": tri.hex_id,
                    "triInHex": tri.index,
                    "crossNeighbors": list(tri.cross_neighbors),
                    "neighborHexIds": list(tri.neighbor_hex_ids),
                },
            }
            for tri in self.triangles.values()
        ]
        return {
            "hex": {"type": "FeatureCollection", "features": hex_features},
            "triangles": {"type": "FeatureCollection", "features": tri_features},
        }


# Boundary / size helpers

def parse_boundary(boundary: Any) -> BaseGeometry:
    """Accept a bbox list, a GeoJSON geometry or a Feature."""
    if isinstance(boundary, (list, tuple)):
        if len(boundary) != 4:
            raise ConfigurationError('bbox must be "minLon,minLat,maxLon,maxLat"')
        try:
            min_lon, min_lat, max_lon, max_lat = (float(v) for v in boundary)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"bbox contains non-numeric values: {boundary}") from e
        if not all(math.isfinite(v) for v in (min_lon, min_lat, max_lon, max_lat)):
            raise ConfigurationError(f"bbox contains non-finite values: {boundary}")
        if min_lon >= max_lon or min_lat >= max_lat:
            raise ConfigurationError("bbox min must be less than max for both lon/lat")
        if not (-180 <= min_lon and max_lon <= 180 and -90 <= min_lat and max_lat <= 90):
            raise ConfigurationError(f"bbox out of range: {boundary}")
        return box(min_lon, min_lat, max_lon, max_lat)

    if not isinstance(boundary, dict):
        raise ConfigurationError(f"unsupported boundary: {type(boundary).__name__}")
    if boundary.get("type") == "Feature":
        boundary = boundary.get("geometry") or {}
    geom_type = boundary.get("type")
    if geom_type not in ("Polygon", "MultiPolygon") or not boundary.get("coordinates"):
        raise ConfigurationError(f"unsupported geometry type: {geom_type}")
    try:
        geom = shape(boundary)
    except (ValueError, TypeError, IndexError) as e:
        raise ConfigurationError(f"failed to read boundary geometry: {e}") from e
    if not geom.is_valid:
        logger.warning("Invalid boundary geometry, attempting to fix with buffer(0)")
        geom = geom.buffer(0)
    if geom.is_empty:
        raise ConfigurationError("boundary geometry is empty")
    return geom


def haversine_km(a: Sequence[float], b: Sequence[float]) -> float:
    lon1, lat1, lon2, lat2 = map(math.radians, (a[0], a[1], b[0], b[1]))
    h = math.sin((lat2 - lat1) / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin((lon2 - lon1) / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def bbox_size(bbox: Sequence[float], unit: str = "kilometers") -> Dict[str, Any]:
    """Width (along the middle latitude) and height (along the middle longitude)."""
    min_x, min_y, max_x, max_y = bbox
    mid_lat = (min_y + max_y) / 2
    mid_lon = (min_x + max_x) / 2
    factor = _unit_factor(unit)
    width = haversine_km((min_x, mid_lat), (max_x, mid_lat)) / factor
    height = haversine_km((mid_lon, min_y), (mid_lon, max_y)) / factor
    return {"width": width, "height": height, "units": unit}


def _unit_factor(unit: str) -> float:
    key = (unit or "").strip().lower()
    if key not in UNIT_TO_KM:
        raise ConfigurationError(f"unknown unit {unit!r}, expected one of {sorted(UNIT_TO_KM)}")
    return UNIT_TO_KM[key]


def approx_area_km2(geom: BaseGeometry) -> float:
    lat = geom.centroid.y
    return geom.area * KM_PER_DEGREE * KM_PER_DEGREE * math.cos(math.radians(lat))


def hex_area_km2(resolution: int) -> float:
    edge = H3_RESOLUTIONS[resolution]["avg_edge_length_km"]
    return 3 * math.sqrt(3) / 2 * edge * edge


def resolution_for_cell_size(cell_size: float, unit: str = "kilometers") -> int:
    size_km = float(cell_size) * _unit_factor(unit)
    return min(
        H3_RESOLUTIONS,
        key=lambda r: abs(math.log(H3_RESOLUTIONS[r]["avg_edge_length_km"]) - math.log(size_km)),
    )


def auto_resolution(geom: BaseGeometry, target_count: int) -> int:
    area = max(approx_area_km2(geom), 1e-9)
    return min(
        H3_RESOLUTIONS,
        key=lambda r: abs(math.log(area / hex_area_km2(r)) - math.log(target_count)),
    )


# Tessellation

def generate_hex_cells(geom: BaseGeometry, h3_resolution: int) -> List[str]:
    """H3 cells intersecting ``geom``, seeded over the buffered bounds."""
    minx, miny, maxx, maxy = geom.bounds
    edge_length_km = H3_RESOLUTIONS[h3_resolution]["avg_edge_length_km"]
    edge_length_degrees = edge_length_km / KM_PER_DEGREE
    buffer = edge_length_degrees * 2
    minx -= buffer
    miny -= buffer
    maxx += buffer
    maxy += buffer

    step = edge_length_degrees * 0.5
    candidates = set()
    lat = miny
    while lat <= maxy:
        lng = minx
        while lng <= maxx:
            cell = h3.latlng_to_cell(lat, lng, h3_resolution)
            if cell not in candidates:
                candidates.add(cell)
                candidates.update(h3.grid_disk(cell, 1))
            lng += step
        lat += step

    intersecting = []
    for cell in candidates:
        if h3.is_pentagon(cell):
            logger.warning("Skipping pentagon cell %s", cell)
            continue
        if geom.intersects(Polygon(cell_ring(cell))):
            intersecting.append(cell)

    # row-major: north to south, then west to east
    def sort_key(cell):
        lat, lng = h3.cell_to_latlng(cell)
        return (-round(lat, 9), round(lng, 9))

    return sorted(intersecting, key=sort_key)


def cell_ring(cell: str) -> List[Tuple[float, float]]:
    ring = [(lng, lat) for lat, lng in h3.cell_to_boundary(cell)]
    ring.append(ring[0])
    return ring


# Triangles and adjacency

def edge_key(a: Sequence[float], b: Sequence[float], digits: int = 6) -> str:
    def fmt(p):
        return f"{p[0]:.{digits}f},{p[1]:.{digits}f}"

    k1 = f"{fmt(a)}|{fmt(b)}"
    k2 = f"{fmt(b)}|{fmt(a)}"
    return k1 if k1 < k2 else k2


def _hex_polygon(ring: Sequence[Sequence[float]], position: int) -> Polygon:
    if not ring or len(ring) < 4:
        raise MeshDegeneracy(f"hex ring has {len(ring or [])} coordinates", position)
    coords = [(float(p[0]), float(p[1])) for p in ring]
    if coords[0] != coords[-1]:
        coords.append(coords[0])
    poly = Polygon(coords)
    if poly.is_empty or poly.area <= 0:
        raise MeshDegeneracy("hex ring has zero area", position)
    # clockwise exterior
    return orient(poly, sign=-1.0)


def assemble_mesh(rings: Iterable[Sequence[Sequence[float]]], digits: int = 6,
                  h3_indexes: Optional[Sequence[str]] = None) -> GeoMesh:
    mesh = GeoMesh()
    edge_to_triangles: Dict[str, List[TriangleCell]] = defaultdict(list)

    for position, ring in enumerate(rings):
        try:
            poly = _hex_polygon(ring, position)
        except MeshDegeneracy as e:
            logger.warning("Skipping degenerate hex #%d: %s", position, e)
            mesh.skipped += 1
            continue

        hex_id = len(mesh.hexes) + 1
        cell = HexCell(hex_id=hex_id, polygon=poly,
                       h3_index=h3_indexes[position] if h3_indexes else None)
        mesh.hexes[hex_id] = cell

        c = poly.centroid
        center = (c.x, c.y)
        coords = list(poly.exterior.coords)
        n = len(coords) - 1
        for i in range(n):
            a = coords[i]
            b = coords[(i + 1) % n]
            tri = TriangleCell(
                triangle_id=f"{hex_id}-{i + 1}",
                hex_id=hex_id,
                index=i + 1,
                polygon=Polygon([a, b, center, a]),
            )
            cell.triangle_ids.append(tri.triangle_id)
            mesh.triangles[tri.triangle_id] = tri
            # only the outer edge (a-b) is keyed; centroid spokes never cross hexes
            edge_to_triangles[edge_key(a, b, digits)].append(tri)

    for shared in edge_to_triangles.values():
        if len(shared) < 2:
            continue
        for tri_a in shared:
            for tri_b in shared:
                if tri_a is tri_b or tri_a.hex_id == tri_b.hex_id:
                    continue
                if tri_b.triangle_id not in tri_a.cross_neighbors:
                    tri_a.cross_neighbors.append(tri_b.triangle_id)
                if tri_b.hex_id not in tri_a.neighbor_hex_ids:
                    tri_a.neighbor_hex_ids.append(tri_b.hex_id)

    return mesh


def build_mesh(boundary: Any, cell_size: float = 0, unit: str = "kilometers",
               settings: Optional[Settings] = None) -> GeoMesh:
    """Tessellate ``boundary`` into hexes and triangles.

    ``cell_size`` is the hex edge length in ``unit``; 0 picks a resolution
    giving roughly ``settings.auto_cell_count`` hexes over the boundary.
    """
    settings = settings or Settings()
    try:
        size = float(cell_size)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"cellSize must be a number: {cell_size!r}") from e
    if not math.isfinite(size) or size < 0:
        raise ConfigurationError("cellSize must be a positive number (or 0 for auto)")
    _unit_factor(unit)

    geom = parse_boundary(boundary)
    if size == 0:
        resolution = auto_resolution(geom, settings.auto_cell_count)
    else:
        resolution = resolution_for_cell_size(size, unit)

    expected = approx_area_km2(geom) / hex_area_km2(resolution)
    if expected > settings.max_cells:
        raise ConfigurationError(
            f"cell size too small: ~{int(expected)} hexes exceeds max_cells={settings.max_cells}")

    extent = bbox_size(geom.bounds)
    logger.info("Generating hexagons at resolution %d (%s) over %.2f x %.2f km",
                resolution, H3_RESOLUTIONS[resolution]["name"], extent["width"], extent["height"])
    cells = generate_hex_cells(geom, resolution)
    mesh = assemble_mesh([cell_ring(c) for c in cells], digits=settings.edge_key_digits, h3_indexes=cells)
    mesh.resolution = resolution
    mesh.cell_size_km = H3_RESOLUTIONS[resolution]["avg_edge_length_km"]
    logger.info("Generated %d hexagons, %d triangles (%d skipped)",
                len(mesh.hexes), len(mesh.triangles), mesh.skipped)
    return mesh


# Point localization

def hex_contains(cell: HexCell, lng: float, lat: float) -> bool:
    return cell.polygon.covers(Point(lng, lat))


def locate_triangle(lng: float, lat: float, triangles: Iterable[TriangleCell]) -> Optional[str]:
    pt = Point(lng, lat)
    for tri in triangles:
        if tri.polygon.covers(pt):
            return tri.triangle_id
    return None
