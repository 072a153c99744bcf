"""
Tests for GIS layers and the spatial predicate engine
=====================================================
Features are built with shapely around a Hyderabad test point; metric
offsets come from ``pyproj.Geod`` so distances are true ground distances.
"""

import json

import pytest
from shapely.geometry import Point, box

from sitewatch.gis import (
    CHANNELS,
    GREEN_COVER,
    LAYER_FILES,
    VULNERABLE_LOCALITIES,
    WATERBODIES,
    WATERWAYS,
    GeoJSONLayerSource,
    Layer,
    LayerFeature,
    SpatialPredicateEngine,
    as_layers,
    layer_from_geojson,
    round_half_up,
)
from sitewatch.types import Severity, ViolationKind

from conftest import CENTER_LAT, CENTER_LNG, meridian_line, offset, square_around


def _layer(name, *geoms, props=None):
    return Layer(name, [LayerFeature(g, dict(props or {})) for g in geoms])


@pytest.fixture
def engine():
    return SpatialPredicateEngine()


class TestContainmentRules:
    def test_no_layers_no_violations(self, engine):
        res = engine.evaluate(CENTER_LAT, CENTER_LNG, {})
        assert res.violations == []
        assert not (res.in_waterbody or res.in_waterway or res.in_vulnerable_zone
                    or res.in_green_belt or res.near_channel)

    def test_none_layers_treated_as_empty(self, engine):
        assert engine.evaluate(CENTER_LAT, CENTER_LNG, None).violations == []

    def test_inside_waterbody_is_high(self, engine):
        layers = {WATERBODIES: _layer(WATERBODIES, square_around(CENTER_LAT, CENTER_LNG),
                                      props={"name": "Hussain Sagar"})}
        res = engine.evaluate(CENTER_LAT, CENTER_LNG, layers)
        assert res.in_waterbody
        (v,) = res.violations
        assert v.type == ViolationKind.WATERBODY
        assert v.feature == "Hussain Sagar"
        assert v.severity == Severity.HIGH
        assert v.distance is None

    def test_unnamed_waterbody_label(self, engine):
        layers = {WATERBODIES: _layer(WATERBODIES, square_around(CENTER_LAT, CENTER_LNG))}
        assert engine.evaluate(CENTER_LAT, CENTER_LNG, layers).violations[0].feature == "Unnamed Waterbody"

    def test_boundary_counts_as_inside(self, engine):
        # point sits on the western edge
        poly = box(CENTER_LNG, CENTER_LAT - 0.001, CENTER_LNG + 0.002, CENTER_LAT + 0.001)
        layers = {GREEN_COVER: _layer(GREEN_COVER, poly)}
        res = engine.evaluate(CENTER_LAT, CENTER_LNG, layers)
        assert res.in_green_belt

    def test_first_matching_feature_wins(self, engine):
        layers = {WATERBODIES: Layer(WATERBODIES, [
            LayerFeature(square_around(CENTER_LAT, CENTER_LNG, 0.002), {"name": "Outer"}),
            LayerFeature(square_around(CENTER_LAT, CENTER_LNG, 0.001), {"name": "Inner"}),
        ])}
        res = engine.evaluate(CENTER_LAT, CENTER_LNG, layers)
        assert [v.feature for v in res.violations] == ["Outer"]

    def test_green_cover_is_medium(self, engine):
        layers = {GREEN_COVER: _layer(GREEN_COVER, square_around(CENTER_LAT, CENTER_LNG), props={"name": "KBR Park"})}
        (v,) = engine.evaluate(CENTER_LAT, CENTER_LNG, layers).violations
        assert v.type == ViolationKind.GREEN_BELT
        assert v.severity == Severity.MEDIUM
        assert v.feature == "KBR Park"

    def test_vulnerable_locality_is_flood_risk(self, engine):
        layers = {VULNERABLE_LOCALITIES: _layer(VULNERABLE_LOCALITIES, square_around(CENTER_LAT, CENTER_LNG))}
        (v,) = engine.evaluate(CENTER_LAT, CENTER_LNG, layers).violations
        assert v.type == ViolationKind.FLOOD_RISK
        assert v.feature == "Vulnerable Locality"
        assert v.severity == Severity.HIGH

    def test_outside_polygon_no_violation(self, engine):
        far_lat, far_lng = offset(CENTER_LAT, CENTER_LNG, 0.0, 1000.0)
        layers = {WATERBODIES: _layer(WATERBODIES, square_around(far_lat, far_lng, 0.001))}
        assert engine.evaluate(CENTER_LAT, CENTER_LNG, layers).violations == []


class TestDistanceRules:
    def test_waterway_within_buffer(self, engine):
        lat, lng = offset(CENTER_LAT, CENTER_LNG, 90.0, 30.0)
        layers = {WATERWAYS: _layer(WATERWAYS, meridian_line(lng, lat), props={"name": "Musi"})}
        res = engine.evaluate(CENTER_LAT, CENTER_LNG, layers)
        assert res.in_waterway
        (v,) = res.violations
        assert v.type == ViolationKind.WATERWAY_BUFFER
        assert v.feature == "Musi"
        assert v.distance == "within 50m buffer"
        assert v.severity == Severity.HIGH

    def test_waterway_outside_buffer(self, engine):
        lat, lng = offset(CENTER_LAT, CENTER_LNG, 90.0, 60.0)
        layers = {WATERWAYS: _layer(WATERWAYS, meridian_line(lng, lat))}
        assert engine.evaluate(CENTER_LAT, CENTER_LNG, layers).violations == []

    def test_channel_close_is_high(self, engine):
        lat, lng = offset(CENTER_LAT, CENTER_LNG, 90.0, 40.0)
        layers = {CHANNELS: _layer(CHANNELS, meridian_line(lng, lat))}
        res = engine.evaluate(CENTER_LAT, CENTER_LNG, layers)
        assert res.near_channel
        (v,) = res.violations
        assert v.type == ViolationKind.CHANNEL_PROXIMITY
        assert v.feature == "Drainage Channel"
        assert v.severity == Severity.HIGH
        assert v.distance == "40m"

    def test_channel_mid_range_is_medium(self, engine):
        lat, lng = offset(CENTER_LAT, CENTER_LNG, 270.0, 70.0)
        layers = {CHANNELS: _layer(CHANNELS, meridian_line(lng, lat))}
        (v,) = engine.evaluate(CENTER_LAT, CENTER_LNG, layers).violations
        assert v.severity == Severity.MEDIUM
        assert v.distance == "70m"

    def test_channel_far_is_ignored(self, engine):
        lat, lng = offset(CENTER_LAT, CENTER_LNG, 90.0, 120.0)
        layers = {CHANNELS: _layer(CHANNELS, meridian_line(lng, lat))}
        assert engine.evaluate(CENTER_LAT, CENTER_LNG, layers).violations == []

    def test_violation_order_follows_rule_order(self, engine):
        lat, lng = offset(CENTER_LAT, CENTER_LNG, 90.0, 20.0)
        layers = {
            CHANNELS: _layer(CHANNELS, meridian_line(lng, lat)),
            GREEN_COVER: _layer(GREEN_COVER, square_around(CENTER_LAT, CENTER_LNG)),
            WATERBODIES: _layer(WATERBODIES, square_around(CENTER_LAT, CENTER_LNG)),
        }
        kinds = [v.type for v in engine.evaluate(CENTER_LAT, CENTER_LNG, layers).violations]
        assert kinds == [ViolationKind.WATERBODY, ViolationKind.GREEN_BELT, ViolationKind.CHANNEL_PROXIMITY]


class TestGeoJSONInput:
    def test_feature_collection_dicts_accepted(self, engine):
        poly = square_around(CENTER_LAT, CENTER_LNG)
        fc = {"type": "FeatureCollection", "features": [
            {"type": "Feature", "properties": {"name": "Lake"}, "geometry": poly.__geo_interface__},
            {"type": "Feature", "properties": {}, "geometry": None},
        ]}
        res = engine.evaluate(CENTER_LAT, CENTER_LNG, {WATERBODIES: fc})
        assert [v.feature for v in res.violations] == ["Lake"]

    def test_layer_from_geojson_skips_empty(self):
        layer = layer_from_geojson("x", {"features": [{"geometry": None}, {}]})
        assert len(layer) == 0
        assert layer.candidates(Point(0, 0)) == []

    def test_as_layers_keeps_layer_objects(self):
        layer = Layer(WATERBODIES, [])
        assert as_layers({WATERBODIES: layer})[WATERBODIES] is layer


class TestGeoJSONLayerSource:
    def test_base_path_fallback_and_gaps(self, tmp_path):
        first = tmp_path / "missing"
        second = tmp_path / "data"
        target = second / LAYER_FILES[WATERBODIES]
        target.parent.mkdir(parents=True)
        poly = square_around(CENTER_LAT, CENTER_LNG)
        target.write_text(json.dumps({"type": "FeatureCollection", "features": [
            {"type": "Feature", "properties": {"name": "Lake"}, "geometry": poly.__geo_interface__}]}),
            encoding="utf-8")

        layers = GeoJSONLayerSource([str(first), str(second)]).load_layers()
        assert set(layers) == {WATERBODIES, WATERWAYS, VULNERABLE_LOCALITIES, GREEN_COVER, CHANNELS}
        assert len(layers[WATERBODIES]) == 1
        assert len(layers[CHANNELS]) == 0

    def test_unreadable_file_is_a_gap(self, tmp_path):
        target = tmp_path / LAYER_FILES[CHANNELS]
        target.parent.mkdir(parents=True)
        target.write_text("{not json", encoding="utf-8")
        layers = GeoJSONLayerSource([str(tmp_path)]).load_layers()
        assert len(layers[CHANNELS]) == 0


class TestRoundHalfUp:
    @pytest.mark.parametrize("value,expected", [(39.5, 40), (40.49, 40), (0.5, 1), (70.0, 70)])
    def test_values(self, value, expected):
        assert round_half_up(value) == expected
