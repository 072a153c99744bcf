import os, json, math, logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union
from pyproj import CRS, Transformer
from shapely.geometry import Point, box, shape
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform as shp_transform
from shapely.strtree import STRtree
from .errors import DataGap
from .types import Severity, Violation, ViolationKind, ZoneCheck
from .telemetry import get_tracer


logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

WATERBODIES = "waterbodies"
WATERWAYS = "waterways"
VULNERABLE_LOCALITIES = "vulnerable_localities"
GREEN_COVER = "green_cover"
CHANNELS = "channels"

LAYER_FILES = {
    WATERBODIES: "GENERAL LAYERS/Waterbodies/Waterbodies.geojson",
    WATERWAYS: "GENERAL LAYERS/Waterways/Hyderabad_Waterways.geojson",
    VULNERABLE_LOCALITIES: "3. Disaster Resilience/3.1 Flooding Risk Management/Vulnerable Localities.geojson",
    GREEN_COVER: "6. Environment/6.1 Public Parks/GHMC _ HMDA Parks.geojson",
    CHANNELS: "3. Disaster Resilience/3.1 Flooding Risk Management/Channels_Strahler order 3.geojson",
}

_M_PER_DEG_LAT = 111_320.0


@dataclass
class LayerFeature:
    geometry: BaseGeometry
    properties: Dict[str, Any] = field(default_factory=dict)

    def label(self, default: str) -> str:
        return str(self.properties.get("name") or default)


class Layer:
    def __init__(self, name: str, features: Sequence[LayerFeature] = ()):
        self.name = name
        self.features = list(features)
        self._tree = STRtree([f.geometry for f in self.features]) if self.features else None

    def __len__(self) -> int:
        return len(self.features)

    def candidates(self, query: BaseGeometry) -> List[LayerFeature]:
        if self._tree is None:
            return []
        # keep layer order so the first matching feature wins
        idx = sorted(int(i) for i in self._tree.query(query))
        return [self.features[i] for i in idx]


def layer_from_geojson(name: str, fc: Optional[Mapping[str, Any]]) -> Layer:
    feats: List[LayerFeature] = []
    for ft in (fc or {}).get("features", None) or []:
        geom = ft.get("geometry")
        if not geom:
            continue
        try:
            g = shape(geom)
        except Exception:
            logger.warning("Layer %s: skipping unreadable geometry type=%s", name, geom.get("type"))
            continue
        if g.is_empty:
            continue
        feats.append(LayerFeature(geometry=g, properties=dict(ft.get("properties") or {})))
    return Layer(name, feats)


LayerInput = Union[Layer, Mapping[str, Any], None]


def as_layers(layers: Optional[Mapping[str, LayerInput]]) -> Dict[str, Layer]:
    out: Dict[str, Layer] = {}
    for name, value in (layers or {}).items():
        out[name] = value if isinstance(value, Layer) else layer_from_geojson(name, value)
    return out


class GeoJSONLayerSource:
    def __init__(self, base_paths: Sequence[str], layer_files: Optional[Mapping[str, str]] = None):
        self.base_paths = list(base_paths)
        self.layer_files = dict(layer_files or LAYER_FILES)

    def _load_one(self, name: str, rel_path: str) -> Dict[str, Any]:
        for base in self.base_paths:
            p = os.path.join(base, rel_path)
            if not os.path.exists(p):
                continue
            try:
                with open(p, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Layer %s unreadable path=%s err=%s", name, p, exc)
                continue
            logger.info("Layer %s loaded path=%s features=%s", name, p, len(data.get("features", [])))
            return data
        raise DataGap(f"layer {name} not found under {self.base_paths}", layer=name)

    def load_layers(self) -> Dict[str, Layer]:
        with tracer.start_as_current_span("gis.load_layers") as span:
            layers: Dict[str, Layer] = {}
            for name, rel in self.layer_files.items():
                try:
                    fc = self._load_one(name, rel)
                except DataGap as gap:
                    logger.warning("GIS data gap layer=%s: %s", gap.layer, gap.message)
                    fc = {"type": "FeatureCollection", "features": []}
                layers[name] = layer_from_geojson(name, fc)
                span.set_attribute(f"layer.{name}", len(layers[name]))
            return layers


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _local_metric(lat: float, lng: float) -> Callable[[BaseGeometry], BaseGeometry]:
    crs = CRS.from_proj4(f"+proj=aeqd +lat_0={lat} +lon_0={lng} +datum=WGS84 +units=m +no_defs")
    t = Transformer.from_crs("EPSG:4326", crs, always_xy=True)
    return lambda g: shp_transform(t.transform, g)


class SpatialPredicateEngine:
    def __init__(self, waterway_buffer_m: float = 50.0, channel_radius_m: float = 100.0,
                 channel_high_m: float = 50.0):
        self.waterway_buffer_m = waterway_buffer_m
        self.channel_radius_m = channel_radius_m
        self.channel_high_m = channel_high_m

    def _search_box(self, lat: float, lng: float, meters: float) -> BaseGeometry:
        dlat = meters / _M_PER_DEG_LAT * 1.5
        dlng = dlat / max(math.cos(math.radians(lat)), 0.01)
        return box(lng - dlng, lat - dlat, lng + dlng, lat + dlat)

    def _first_containing(self, layer: Optional[Layer], pt: Point) -> Optional[LayerFeature]:
        if layer is None:
            return None
        for ft in layer.candidates(pt):
            if ft.geometry.covers(pt):
                return ft
        return None

    def _first_within(self, layer: Optional[Layer], lat: float, lng: float, meters: float,
                      to_metric, inclusive: bool):
        if layer is None:
            return None, None
        for ft in layer.candidates(self._search_box(lat, lng, meters)):
            d = float(to_metric(ft.geometry).distance(Point(0.0, 0.0)))
            if (d <= meters) if inclusive else (d < meters):
                return ft, d
        return None, None

    def evaluate(self, lat: float, lng: float, layers: Optional[Mapping[str, LayerInput]]) -> ZoneCheck:
        with tracer.start_as_current_span("gis.evaluate") as span:
            span.set_attribute("point.lat", lat)
            span.set_attribute("point.lng", lng)
            ls = as_layers(layers)
            pt = Point(lng, lat)
            to_metric = _local_metric(lat, lng)
            res = ZoneCheck()

            ft = self._first_containing(ls.get(WATERBODIES), pt)
            if ft is not None:
                res.in_waterbody = True
                res.violations.append(Violation(type=ViolationKind.WATERBODY, feature=ft.label("Unnamed Waterbody"),
                                                severity=Severity.HIGH))

            ft, _ = self._first_within(ls.get(WATERWAYS), lat, lng, self.waterway_buffer_m, to_metric, inclusive=True)
            if ft is not None:
                res.in_waterway = True
                res.violations.append(Violation(type=ViolationKind.WATERWAY_BUFFER, feature=ft.label("Waterway"),
                                                severity=Severity.HIGH,
                                                distance=f"within {round_half_up(self.waterway_buffer_m)}m buffer"))

            ft = self._first_containing(ls.get(VULNERABLE_LOCALITIES), pt)
            if ft is not None:
                res.in_vulnerable_zone = True
                res.violations.append(Violation(type=ViolationKind.FLOOD_RISK, feature=ft.label("Vulnerable Locality"),
                                                severity=Severity.HIGH))

            ft = self._first_containing(ls.get(GREEN_COVER), pt)
            if ft is not None:
                res.in_green_belt = True
                res.violations.append(Violation(type=ViolationKind.GREEN_BELT, feature=ft.label("Park/Green Space"),
                                                severity=Severity.MEDIUM))

            ft, d = self._first_within(ls.get(CHANNELS), lat, lng, self.channel_radius_m, to_metric, inclusive=False)
            if ft is not None:
                res.near_channel = True
                res.violations.append(Violation(
                    type=ViolationKind.CHANNEL_PROXIMITY, feature="Drainage Channel",
                    severity=Severity.HIGH if d < self.channel_high_m else Severity.MEDIUM,
                    distance=f"{round_half_up(d)}m"))

            span.set_attribute("violations.count", len(res.violations))
            logger.info("Zone check lat=%.6f lng=%.6f violations=%s", lat, lng,
                        [v.type.value for v in res.violations])
            return res
