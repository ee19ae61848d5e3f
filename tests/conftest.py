import time

import h3
import pytest

from hexharvest.categories import assign_palette, parse_category_spec
from hexharvest.geomesh import assemble_mesh, cell_ring
from hexharvest.session import Target
from hexharvest.settings import Settings

TOKYO_BBOX = [139.70, 35.65, 139.80, 35.75]
TOKYO_SPEC = "food=restaurant,cafe|park=garden,park"


@pytest.fixture
def pair_cells():
    """Two adjacent resolution-8 cells in central Tokyo."""
    cell = h3.latlng_to_cell(35.68, 139.76, 8)
    neighbor = sorted(set(h3.grid_disk(cell, 1)) - {cell})[0]
    return cell, neighbor


@pytest.fixture
def pair_mesh(pair_cells):
    return assemble_mesh([cell_ring(c) for c in pair_cells], h3_indexes=list(pair_cells))


@pytest.fixture
def pair_target(pair_mesh):
    categories = parse_category_spec("food=restaurant,cafe|park=garden")
    return Target(mesh=pair_mesh, categories=categories, palette=assign_palette(categories))


@pytest.fixture
def settings():
    return Settings(pool_size=2)


def feature(item_id, lng=139.76, lat=35.68, hex_id=1):
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [lng, lat]},
        "properties": {"id": item_id, "harvest_provider": "test", "harvest_hexId": hex_id,
                       "harvest_triangleId": f"{hex_id}-1"},
    }


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
