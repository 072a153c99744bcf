import random
from typing import Dict, Optional

import numpy as np
import pytest
from pyproj import Geod
from shapely.geometry import LineString, Point, box

from sitewatch.config import Settings
from sitewatch.gis import CHANNELS, GREEN_COVER, VULNERABLE_LOCALITIES, WATERBODIES, WATERWAYS, Layer, LayerFeature
from sitewatch.imagery import ImagerySource
from sitewatch.models import Model, ModelSlot, PlaceholderChangeModel, PlaceholderDetectionModel, reset_slots
from sitewatch.pipeline import ChangeDetectionPipeline
from sitewatch.types import SatImage


CENTER_LAT = 17.385
CENTER_LNG = 78.4867

GEOD = Geod(ellps="WGS84")


def offset(lat: float, lng: float, azimuth: float, meters: float):
    """Point ``meters`` away from (lat, lng) along ``azimuth``; returns (lat, lng)."""
    lng2, lat2, _ = GEOD.fwd(lng, lat, azimuth, meters)
    return lat2, lng2


def make_images(size: int = 256, square: Optional[slice] = slice(96, 160)):
    before = np.full((size, size, 3), 100, dtype=np.uint8)
    after = before.copy()
    if square is not None:
        after[square, square] = 255
    return before, after


def sat(rgb: np.ndarray, url: str, date: str = "2006-06-15") -> SatImage:
    return SatImage(url=url, width=rgb.shape[1], height=rgb.shape[0], date=date, source="test",
                    year=int(date[:4]), years_back=0, rgb=rgb)


class FakeImagery(ImagerySource):
    def __init__(self, before: Optional[np.ndarray], after: Optional[np.ndarray], fail_current: bool = False):
        self.before = before
        self.after = after
        self.fail_current = fail_current
        self.calls = []

    async def fetch_historical(self, lat, lng, date=None, baseline_year=2006):
        self.calls.append(("historical", lat, lng, date))
        if self.before is None:
            return None
        return sat(self.before, "mem://before", date or f"{baseline_year}-06-15")

    async def fetch_current(self, lat, lng):
        self.calls.append(("current", lat, lng))
        if self.fail_current:
            raise RuntimeError("tile server down")
        if self.after is None:
            return None
        return sat(self.after, "mem://after", "2024-01-01")


class StaticLayerSource:
    def __init__(self, layers: Optional[Dict[str, Layer]] = None):
        self.layers = layers or {}

    def load_layers(self):
        return dict(self.layers)


class ConstantChangeModel(Model):
    name = "constant-change"

    def __init__(self, value: float = 0.0):
        self.value = value

    def predict(self, x):
        return np.full((x.shape[1], x.shape[2]), self.value, dtype=np.float32)


def slot_for(model: Model, name: str = "test") -> ModelSlot:
    async def loader():
        return model
    return ModelSlot(name, loader, PlaceholderChangeModel)


@pytest.fixture(autouse=True)
def _clean_slots():
    reset_slots()
    yield
    reset_slots()


@pytest.fixture
def settings():
    return Settings(fallback_seed=1234)


@pytest.fixture
def placeholder_pipeline(settings):
    return ChangeDetectionPipeline(
        slot_for(PlaceholderChangeModel(), "change"),
        slot_for(PlaceholderDetectionModel(), "detection"),
        settings,
        rng=random.Random(1234),
    )


@pytest.fixture
def hyderabad_layers():
    """One feature per layer placed around the test center."""
    c = Point(CENTER_LNG, CENTER_LAT)
    return {
        WATERBODIES: Layer(WATERBODIES, [LayerFeature(c.buffer(0.001), {"name": "Hussain Sagar"})]),
        WATERWAYS: Layer(WATERWAYS, []),
        VULNERABLE_LOCALITIES: Layer(VULNERABLE_LOCALITIES, []),
        GREEN_COVER: Layer(GREEN_COVER, []),
        CHANNELS: Layer(CHANNELS, []),
    }


def meridian_line(lng: float, lat: float, half_span_deg: float = 0.01) -> LineString:
    return LineString([(lng, lat - half_span_deg), (lng, lat + half_span_deg)])


def square_around(lat: float, lng: float, half_deg: float = 0.001):
    return box(lng - half_deg, lat - half_deg, lng + half_deg, lat + half_deg)
