import asyncio, hashlib, logging, random
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional
import numpy as np
from .config import Settings
from .geo import pixel_to_latlng
from .imagery import load_rgb
from .models import DetectionOutput, Model, ModelSlot, prepare_change_input, prepare_detection_input
from .regions import RegionExtractor, center_in_regions, scale_bbox
from .types import Change, ChangeDetectionResult, ChangeMask, Detection, GeoPoint, SatImage
from .telemetry import get_tracer


logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

METHOD_ML = "UNet + Mask R-CNN"
METHOD_FALLBACK = "Fallback (No ML models available)"
DETECTION_FALLBACK = "Fallback"
NO_CHANGE_CONFIDENCE = 0.95
DEFAULT_MASK_CONFIDENCE = 0.75
DEFAULT_DETECTION_CONFIDENCE = 0.8
FALLBACK_CHANGE_PROBABILITY = 0.6
FALLBACK_OFFSET_DEG = 0.01
FALLBACK_LOOKBACK_DAYS = 90
STRUCTURE_TYPES = ["Residential Building", "Commercial Structure", "Infrastructure"]


class PipelineState(str, Enum):
    IDLE = "IDLE"
    CHANGE_INFERENCE = "CHANGE_INFERENCE"
    REGION_EXTRACTION = "REGION_EXTRACTION"
    BUILDING_INFERENCE = "BUILDING_INFERENCE"
    GEOREFERENCING = "GEOREFERENCING"
    DONE = "DONE"
    ERROR = "ERROR"
    FALLBACK = "FALLBACK"


def structure_type(cls: int) -> str:
    if cls == 1:
        return "Residential Building"
    if cls == 2:
        return "Commercial Structure"
    return "Infrastructure"


def _stable_change_id(point: GeoPoint, bbox) -> str:
    h = hashlib.sha1()
    h.update(f"{point.lat:.7f},{point.lng:.7f}".encode("utf-8"))
    h.update(b"|")
    h.update(",".join(f"{v:.2f}" for v in bbox).encode("utf-8"))
    return f"change_{h.hexdigest()[:12]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChangeDetectionPipeline:
    def __init__(self, change_slot: ModelSlot, detection_slot: ModelSlot,
                 settings: Optional[Settings] = None,
                 extractor: Optional[RegionExtractor] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.settings = settings or Settings()
        s = self.settings
        self.change_slot = change_slot
        self.detection_slot = detection_slot
        self.extractor = extractor or RegionExtractor(stride=s.region_stride, min_pixels=s.region_min_pixels,
                                                      max_region_pixels=s.region_max_pixels,
                                                      max_regions=s.max_regions, threshold=s.mask_threshold)
        self.rng = rng if rng is not None else random.Random(s.fallback_seed)
        self.clock = clock

    async def _run_cpu(self, fn, *args):
        if self.settings.offload_cpu:
            return await asyncio.to_thread(fn, *args)
        return fn(*args)

    def _enter(self, states: List[PipelineState], state: PipelineState) -> None:
        logger.info("Pipeline state %s -> %s", states[-1].value if states else "-", state.value)
        states.append(state)

    async def change_mask(self, model: Model, before_rgb: np.ndarray, after_rgb: np.ndarray) -> ChangeMask:
        with tracer.start_as_current_span("pipeline.change_mask") as span:
            size = self.settings.change_input_size
            x = prepare_change_input(before_rgb, after_rgb, size)
            probs = np.squeeze(np.asarray(await self._run_cpu(model.predict, x), dtype=np.float32))
            del x
            if probs.ndim != 2:
                raise ValueError(f"change model output must be 2-D, got shape {probs.shape}")
            h, w = probs.shape
            span.set_attribute("mask.size", f"{w}x{h}")
            span.set_attribute("model", model.name)
            return ChangeMask(width=w, height=h, probs=probs)

    def parse_detections(self, out: DetectionOutput, width: int, height: int) -> List[Detection]:
        s = self.settings
        dets: List[Detection] = []
        n = min(len(out), s.max_detections)
        for i in range(n):
            score = float(out.scores[i])
            if score <= s.detection_score_threshold:
                continue
            x1, y1, x2, y2 = (float(v) for v in out.boxes[i])
            dets.append(Detection(
                det_id=f"building_{i}",
                bbox_px=(x1 * width, y1 * height, (x2 - x1) * width, (y2 - y1) * height),
                cls=int(out.classes[i]),
                confidence=min(max(score, 0.0), 1.0),
            ))
        return dets

    async def detect_buildings(self, model: Model, after_rgb: np.ndarray, mask: ChangeMask) -> List[Detection]:
        with tracer.start_as_current_span("pipeline.detect_buildings") as span:
            h, w = after_rgb.shape[:2]
            x = prepare_detection_input(after_rgb, self.settings.detection_input_size)
            out = await self._run_cpu(model.predict, x)
            del x
            dets = self.parse_detections(out, w, h)
            span.set_attribute("detections.raw", len(dets))
            if not mask.regions:
                return dets
            boxes = [scale_bbox(r.bbox, (mask.width, mask.height), (w, h)) for r in mask.regions]
            kept = [d for d in dets if center_in_regions(d.center(), boxes)]
            span.set_attribute("detections.kept", len(kept))
            logger.info("Detections raw=%s in_regions=%s regions=%s", len(dets), len(kept), len(boxes))
            return kept

    def georeference(self, dets: List[Detection], center: GeoPoint, width: int, height: int,
                     before: SatImage, after: SatImage, detected_at: str) -> List[Change]:
        s = self.settings
        changes = []
        for d in dets:
            cx, cy = d.center()
            pos = pixel_to_latlng(cx, cy, center, width, height, zoom=s.georef_zoom)
            _, _, bw, bh = d.bbox_px
            changes.append(Change(
                id=_stable_change_id(pos, d.bbox_px),
                coordinates=pos,
                area=max(bw * bh * s.area_scale, s.min_area_m2),
                type=structure_type(d.cls),
                confidence=d.confidence or DEFAULT_DETECTION_CONFIDENCE,
                detected_date=detected_at,
                before_image=before.url,
                after_image=after.url,
                bbox=d.bbox_px,
                detection_method=METHOD_ML,
            ))
        return changes

    async def detect(self, before: SatImage, after: SatImage, center: GeoPoint) -> ChangeDetectionResult:
        with tracer.start_as_current_span("pipeline.detect") as span:
            states = [PipelineState.IDLE]
            try:
                change_model, det_model = await asyncio.gather(self.change_slot.load(), self.detection_slot.load())
                before_rgb, after_rgb = await asyncio.gather(load_rgb(before), load_rgb(after))

                self._enter(states, PipelineState.CHANGE_INFERENCE)
                mask = await self.change_mask(change_model, before_rgb, after_rgb)
                del before_rgb

                self._enter(states, PipelineState.REGION_EXTRACTION)
                binary = (mask.probs > self.settings.mask_threshold).astype(np.uint8)
                mask.regions = await self._run_cpu(self.extractor.extract, binary, mask.width, mask.height)
                del binary
                confidence = float(mask.probs.max()) if mask.probs.size else DEFAULT_MASK_CONFIDENCE
                span.set_attribute("regions.count", len(mask.regions))
                if not mask.regions:
                    self._enter(states, PipelineState.DONE)
                    logger.info("No change regions; skipping building detection")
                    return ChangeDetectionResult(has_change=False, confidence=NO_CHANGE_CONFIDENCE, changes=[],
                                                 analysis_date=self.clock().isoformat(), method=METHOD_ML,
                                                 change_regions=0, states=[st.value for st in states])

                self._enter(states, PipelineState.BUILDING_INFERENCE)
                dets = await self.detect_buildings(det_model, after_rgb, mask)

                self._enter(states, PipelineState.GEOREFERENCING)
                h, w = after_rgb.shape[:2]
                del after_rgb
                now = self.clock().isoformat()
                changes = self.georeference(dets, center, w, h, before, after, now)
                n_regions = len(mask.regions)
                del mask

                self._enter(states, PipelineState.DONE)
                span.set_attribute("changes.count", len(changes))
                logger.info("Change detection done regions=%s buildings=%s confidence=%.3f",
                            n_regions, len(dets), confidence)
                return ChangeDetectionResult(has_change=True, confidence=confidence, changes=changes,
                                             analysis_date=now, method=METHOD_ML, change_regions=n_regions,
                                             buildings_detected=len(dets), states=[st.value for st in states])
            except Exception:
                logger.exception("Change detection failed in state=%s; using fallback", states[-1].value)
                self._enter(states, PipelineState.ERROR)
                return self.fallback(before, after, center, states)

    def fallback(self, before: Optional[SatImage], after: Optional[SatImage], center: GeoPoint,
                 states: Optional[List[PipelineState]] = None) -> ChangeDetectionResult:
        with tracer.start_as_current_span("pipeline.fallback") as span:
            states = list(states or [PipelineState.IDLE, PipelineState.ERROR])
            self._enter(states, PipelineState.FALLBACK)
            rng = self.rng
            now = self.clock()
            p = rng.random()
            changes: List[Change] = []
            if p > FALLBACK_CHANGE_PROBABILITY:
                for i in range(rng.randint(1, 3)):
                    off_lat = (rng.random() - 0.5) * FALLBACK_OFFSET_DEG
                    off_lng = (rng.random() - 0.5) * FALLBACK_OFFSET_DEG
                    area = rng.random() * 500.0 + 100.0
                    kind = STRUCTURE_TYPES[rng.randrange(len(STRUCTURE_TYPES))]
                    conf = rng.random() * 0.3 + 0.7
                    age = timedelta(days=rng.random() * FALLBACK_LOOKBACK_DAYS)
                    changes.append(Change(
                        id=f"fallback_{rng.getrandbits(48):012x}_{i}",
                        coordinates=GeoPoint(lat=center.lat + off_lat, lng=center.lng + off_lng),
                        area=area,
                        type=kind,
                        confidence=conf,
                        detected_date=(now - age).isoformat(),
                        before_image=before.url if before else None,
                        after_image=after.url if after else None,
                        detection_method=DETECTION_FALLBACK,
                    ))
            self._enter(states, PipelineState.DONE)
            span.set_attribute("changes.count", len(changes))
            logger.warning("Fallback detection p=%.3f changes=%s", p, len(changes))
            return ChangeDetectionResult(has_change=bool(changes), confidence=p if changes else 1.0 - p,
                                         changes=changes, analysis_date=now.isoformat(), method=METHOD_FALLBACK,
                                         states=[st.value for st in states])
