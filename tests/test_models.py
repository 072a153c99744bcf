"""
Tests for model slots and preprocessing
=======================================
No real weights are loaded; loaders are small coroutines.
"""

import asyncio

import numpy as np
import pytest

from sitewatch.config import Settings
from sitewatch.errors import ResourceUnavailable
from sitewatch.models import (
    DetectionOutput,
    ModelSlot,
    PlaceholderChangeModel,
    PlaceholderDetectionModel,
    change_model_slot,
    detection_model_slot,
    get_slot,
    prepare_change_input,
    prepare_detection_input,
    resolve_model_path,
)

from conftest import ConstantChangeModel, make_images


class TestPreprocessing:
    def test_change_input_shape_and_range(self):
        before, after = make_images(200)
        x = prepare_change_input(before, after, 512)
        assert x.shape == (1, 512, 512, 6)
        assert x.dtype == np.float32
        assert 0.0 <= x.min() and x.max() <= 1.0

    def test_detection_input_shape(self):
        _, after = make_images(300)
        x = prepare_detection_input(after, 800)
        assert x.shape == (1, 800, 800, 3)


class TestPlaceholderModels:
    def test_identical_images_yield_zero_change(self):
        before, _ = make_images(128)
        probs = PlaceholderChangeModel().predict(prepare_change_input(before, before, 64))
        assert probs.shape == (64, 64)
        assert float(probs.max()) == 0.0

    def test_changed_square_lights_up(self):
        before, after = make_images(256)
        probs = PlaceholderChangeModel().predict(prepare_change_input(before, after, 512))
        assert probs[256, 256] > 0.5
        assert probs[10, 10] == 0.0

    def test_detector_finds_bright_square(self):
        _, after = make_images(256)
        out = PlaceholderDetectionModel().predict(prepare_detection_input(after, 800))
        assert isinstance(out, DetectionOutput)
        assert len(out) == 1
        x1, y1, x2, y2 = out.boxes[0]
        assert x1 == pytest.approx(0.375, abs=0.01)
        assert x2 == pytest.approx(0.625, abs=0.01)
        assert float(out.scores[0]) == pytest.approx(0.8)
        assert int(out.classes[0]) == 1

    def test_detector_on_flat_image_is_empty(self):
        before, _ = make_images(64)
        out = PlaceholderDetectionModel().predict(prepare_detection_input(before, 128))
        assert len(out) == 0
        assert out.boxes.shape == (0, 4)


class TestModelSlot:
    def test_concurrent_loads_share_one_attempt(self):
        calls = []
        model = ConstantChangeModel(0.1)

        async def loader():
            calls.append(1)
            await asyncio.sleep(0.01)
            return model

        slot = ModelSlot("shared", loader, PlaceholderChangeModel)

        async def run():
            return await asyncio.gather(*(slot.load() for _ in range(5)))

        results = asyncio.run(run())
        assert all(r is model for r in results)
        assert slot.load_attempts == 1
        assert len(calls) == 1
        assert slot.model is model

    def test_second_load_reuses_model(self):
        model = ConstantChangeModel()

        async def loader():
            return model

        slot = ModelSlot("once", loader, PlaceholderChangeModel)
        asyncio.run(slot.load())
        asyncio.run(slot.load())
        assert slot.load_attempts == 1

    def test_failing_loader_substitutes_placeholder(self):
        async def loader():
            raise ResourceUnavailable("weights missing")

        slot = ModelSlot("broken", loader, PlaceholderChangeModel)
        model = asyncio.run(slot.load())
        assert isinstance(model, PlaceholderChangeModel)
        assert model.is_placeholder

    def test_registry_returns_same_slot(self):
        async def loader():
            return ConstantChangeModel()

        a = get_slot("k", loader, PlaceholderChangeModel)
        b = get_slot("k", loader, PlaceholderChangeModel)
        assert a is b

    def test_missing_weights_fall_back_per_kind(self, tmp_path):
        s = Settings(change_model_path=str(tmp_path / "nope.pt"), detection_model_path=str(tmp_path / "nope2.pt"),
                     model_cache_dir=str(tmp_path / "cache"))

        async def run():
            return await asyncio.gather(change_model_slot(s).load(), detection_model_slot(s).load())

        change, det = asyncio.run(run())
        assert isinstance(change, PlaceholderChangeModel)
        assert isinstance(det, PlaceholderDetectionModel)
        assert change_model_slot(s) is change_model_slot(s)


class TestResolveModelPath:
    def test_local_path_returned(self, tmp_path):
        p = tmp_path / "model.pt"
        p.write_bytes(b"x")
        assert asyncio.run(resolve_model_path(str(p), str(tmp_path / "cache"))) == str(p)

    def test_missing_local_path_raises(self, tmp_path):
        with pytest.raises(ResourceUnavailable):
            asyncio.run(resolve_model_path(str(tmp_path / "missing.pt"), str(tmp_path / "cache")))
