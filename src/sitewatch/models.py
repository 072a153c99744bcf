import os, asyncio, hashlib, logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional
import numpy as np
import cv2
import httpx
from .errors import ResourceUnavailable
from .config import Settings
from .telemetry import get_tracer


logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


@dataclass
class DetectionOutput:
    boxes: np.ndarray
    scores: np.ndarray
    classes: np.ndarray
    masks: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return int(self.scores.shape[0])


class Model:
    name = "model"
    is_placeholder = False

    def predict(self, x: np.ndarray):
        raise NotImplementedError


def prepare_change_input(before_rgb: np.ndarray, after_rgb: np.ndarray, size: int) -> np.ndarray:
    a = cv2.resize(before_rgb, (size, size), interpolation=cv2.INTER_LINEAR).astype(np.float32) / 255.0
    b = cv2.resize(after_rgb, (size, size), interpolation=cv2.INTER_LINEAR).astype(np.float32) / 255.0
    return np.concatenate([a, b], axis=2)[np.newaxis, ...]


def prepare_detection_input(rgb: np.ndarray, size: int) -> np.ndarray:
    x = cv2.resize(rgb, (size, size), interpolation=cv2.INTER_LINEAR).astype(np.float32) / 255.0
    return x[np.newaxis, ...]


class RealChangeModel(Model):
    def __init__(self, module, device: str = "cpu", name: str = "unet-change-detection"):
        self.module = module
        self.device = device
        self.name = name

    def predict(self, x: np.ndarray) -> np.ndarray:
        import torch
        size = x.shape[1]
        t = torch.from_numpy(np.ascontiguousarray(x.transpose(0, 3, 1, 2))).to(self.device)
        with torch.no_grad():
            out = self.module(t)
        probs = np.squeeze(out.detach().cpu().numpy().astype(np.float32))
        if probs.shape != (size, size):
            raise ValueError(f"change model returned shape {probs.shape}, expected {(size, size)}")
        return np.clip(probs, 0.0, 1.0)


class RealDetectionModel(Model):
    def __init__(self, model, device: str = "cpu", conf: float = 0.25, max_det: int = 100,
                 name: str = "mask-rcnn-buildings"):
        self.model = model
        self.device = device
        self.conf = conf
        self.max_det = max_det
        self.name = name

    def predict(self, x: np.ndarray) -> DetectionOutput:
        rgb = np.clip(x[0] * 255.0, 0, 255).astype(np.uint8)
        bgr = cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
        res = self.model.predict(bgr, conf=self.conf, max_det=self.max_det, device=self.device, verbose=False)[0]
        if res.boxes is None or len(res.boxes) == 0:
            return DetectionOutput(boxes=np.zeros((0, 4), np.float32), scores=np.zeros((0,), np.float32),
                                   classes=np.zeros((0,), np.int32))
        masks = res.masks.data.cpu().numpy() if getattr(res, "masks", None) is not None else None
        return DetectionOutput(
            boxes=res.boxes.xyxyn.cpu().numpy().astype(np.float32),
            scores=res.boxes.conf.cpu().numpy().astype(np.float32),
            classes=res.boxes.cls.cpu().numpy().astype(np.int32),
            masks=masks,
        )


class PlaceholderChangeModel(Model):
    """Stand-in change model: blurred mean absolute difference between the two stacks."""

    is_placeholder = True

    def __init__(self, gain: float = 4.0, name: str = "placeholder-change"):
        self.gain = gain
        self.name = name

    def predict(self, x: np.ndarray) -> np.ndarray:
        before = x[0, :, :, :3]
        after = x[0, :, :, 3:6]
        diff = np.abs(after - before).mean(axis=2).astype(np.float32)
        diff = cv2.GaussianBlur(diff, (5, 5), 0)
        return np.clip(diff * self.gain, 0.0, 1.0)


class PlaceholderDetectionModel(Model):
    """Stand-in detector: bright connected blobs after Otsu thresholding, fixed score."""

    is_placeholder = True

    def __init__(self, score: float = 0.8, cls: int = 1, max_det: int = 10,
                 min_area_frac: float = 0.0005, max_area_frac: float = 0.5, name: str = "placeholder-detection"):
        self.score = score
        self.cls = cls
        self.max_det = max_det
        self.min_area_frac = min_area_frac
        self.max_area_frac = max_area_frac
        self.name = name

    def predict(self, x: np.ndarray) -> DetectionOutput:
        h, w = x.shape[1], x.shape[2]
        gray = (np.clip(x[0].mean(axis=2), 0.0, 1.0) * 255.0).astype(np.uint8)
        _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        binary = cv2.morphologyEx(binary, cv2.MORPH_OPEN, np.ones((3, 3), np.uint8))
        n, _, stats, _ = cv2.connectedComponentsWithStats(binary, connectivity=8)
        boxes = []
        total = float(h * w)
        for i in range(1, n):
            bx, by, bw, bh, area = (int(v) for v in stats[i])
            frac = area / total
            if frac < self.min_area_frac or frac > self.max_area_frac:
                continue
            boxes.append((bx / w, by / h, (bx + bw) / w, (by + bh) / h))
            if len(boxes) >= self.max_det:
                break
        k = len(boxes)
        return DetectionOutput(
            boxes=np.asarray(boxes, dtype=np.float32).reshape(k, 4),
            scores=np.full((k,), self.score, dtype=np.float32),
            classes=np.full((k,), self.cls, dtype=np.int32),
        )


async def resolve_model_path(source: str, cache_dir: str, timeout_s: float = 60.0) -> str:
    if source.startswith(("http://", "https://")):
        os.makedirs(cache_dir, exist_ok=True)
        suffix = os.path.splitext(source.split("?", 1)[0])[1] or ".bin"
        local = os.path.join(cache_dir, hashlib.sha1(source.encode("utf-8")).hexdigest()[:16] + suffix)
        if os.path.exists(local):
            return local
        try:
            async with httpx.AsyncClient(timeout=timeout_s, follow_redirects=True) as client:
                r = await client.get(source)
                r.raise_for_status()
        except httpx.HTTPError as exc:
            raise ResourceUnavailable(f"model download failed url={source}: {exc}", resource=source) from exc
        tmp = local + ".tmp"
        with open(tmp, "wb") as f:
            f.write(r.content)
        os.replace(tmp, local)
        logger.info("Model downloaded url=%s path=%s bytes=%s", source, local, len(r.content))
        return local
    if not os.path.exists(source):
        raise ResourceUnavailable(f"model file not found: {source}", resource=source)
    return source


def _load_torchscript(path: str, device: str) -> RealChangeModel:
    import torch
    module = torch.jit.load(path, map_location=device)
    module.eval()
    logger.info("Change model loaded path=%s device=%s", path, device)
    return RealChangeModel(module, device=device)


def _load_yolo(path: str, device: str, max_det: int) -> RealDetectionModel:
    from ultralytics import YOLO
    model = YOLO(path)
    logger.info("Detection model loaded path=%s device=%s", path, device)
    return RealDetectionModel(model, device=device, max_det=max_det)


class ModelSlot:
    def __init__(self, name: str, loader: Callable[[], Awaitable[Model]], placeholder: Callable[[], Model]):
        self.name = name
        self._loader = loader
        self._placeholder = placeholder
        self._model: Optional[Model] = None
        self._pending: Optional[asyncio.Future] = None
        self.load_attempts = 0

    @property
    def model(self) -> Optional[Model]:
        return self._model

    async def load(self) -> Model:
        if self._model is not None:
            return self._model
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._load())
        return await self._pending

    async def _load(self) -> Model:
        self.load_attempts += 1
        with tracer.start_as_current_span("models.load") as span:
            span.set_attribute("slot", self.name)
            try:
                model = await self._loader()
            except Exception as exc:
                logger.warning("Model slot=%s unavailable, substituting placeholder err=%s", self.name, exc)
                model = self._placeholder()
            span.set_attribute("placeholder", bool(model.is_placeholder))
            logger.info("Model slot=%s ready model=%s placeholder=%s attempts=%s",
                        self.name, model.name, model.is_placeholder, self.load_attempts)
            self._model = model
            self._pending = None
            return model


_SLOTS: Dict[str, ModelSlot] = {}


def get_slot(name: str, loader: Callable[[], Awaitable[Model]], placeholder: Callable[[], Model]) -> ModelSlot:
    slot = _SLOTS.get(name)
    if slot is None:
        slot = ModelSlot(name, loader, placeholder)
        _SLOTS[name] = slot
    return slot


def reset_slots() -> None:
    _SLOTS.clear()


def change_model_slot(settings: Settings) -> ModelSlot:
    async def loader() -> Model:
        path = await resolve_model_path(settings.change_model_path, settings.model_cache_dir)
        return await asyncio.to_thread(_load_torchscript, path, settings.model_device)
    return get_slot(f"change:{settings.change_model_path}", loader, PlaceholderChangeModel)


def detection_model_slot(settings: Settings) -> ModelSlot:
    async def loader() -> Model:
        path = await resolve_model_path(settings.detection_model_path, settings.model_cache_dir)
        return await asyncio.to_thread(_load_yolo, path, settings.model_device, settings.max_detections)
    return get_slot(f"detection:{settings.detection_model_path}", loader, PlaceholderDetectionModel)
