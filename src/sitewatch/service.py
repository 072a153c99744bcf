import asyncio, logging, math
from datetime import date, datetime, timezone
from typing import Dict, Optional, Sequence, Union
from .config import Settings
from .errors import ValidationError
from .geo import ServiceRegion, parse_coordinates
from .gis import GeoJSONLayerSource, Layer
from .imagery import EsriTileImagery, ImagerySource
from .models import change_model_slot, detection_model_slot
from .pipeline import ChangeDetectionPipeline
from .sites import SiteAssembler
from .storage import JsonFileSiteStore, SiteStore
from .types import AnalysisResult, GeoPoint, SatImage
from .telemetry import get_tracer


logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

NO_CHANGE_MESSAGE = "No significant construction changes detected"


def _check_radius(radius_km) -> float:
    try:
        r = float(radius_km)
    except (TypeError, ValueError):
        raise ValidationError(f"radius must be a number, got {radius_km!r}") from None
    if not math.isfinite(r) or r <= 0:
        raise ValidationError(f"radius must be positive and finite, got {radius_km!r}")
    return r


def _check_date(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        return date.fromisoformat(str(value).strip()).isoformat()
    except ValueError:
        raise ValidationError(f"Invalid date {value!r}. Use: YYYY-MM-DD") from None


class SiteAnalyzer:
    def __init__(self, pipeline: ChangeDetectionPipeline, imagery: ImagerySource, layer_source,
                 store: SiteStore, assembler: Optional[SiteAssembler] = None,
                 region: Optional[ServiceRegion] = None, settings: Optional[Settings] = None):
        self.pipeline = pipeline
        self.imagery = imagery
        self.layer_source = layer_source
        self.store = store
        self.assembler = assembler or SiteAssembler()
        self.region = region or ServiceRegion()
        self.settings = settings or pipeline.settings

    @classmethod
    def from_settings(cls, settings: Settings, imagery: Optional[ImagerySource] = None,
                      store: Optional[SiteStore] = None) -> "SiteAnalyzer":
        pipeline = ChangeDetectionPipeline(change_model_slot(settings), detection_model_slot(settings), settings)
        imagery = imagery or EsriTileImagery(zoom=settings.imagery_zoom, width=settings.imagery_width,
                                             height=settings.imagery_height,
                                             tile_timeout_s=settings.tile_timeout_s,
                                             composite_timeout_s=settings.composite_timeout_s)
        return cls(pipeline, imagery, GeoJSONLayerSource(settings.gis_base_paths),
                   store or JsonFileSiteStore(settings.sites_path), settings=settings)

    async def _fetch(self, coro, label: str) -> Optional[SatImage]:
        try:
            return await coro
        except Exception:
            logger.exception("Imagery fetch failed image=%s", label)
            return None

    async def analyze(self, point: Union[str, GeoPoint, Sequence[float]], radius_km: float = 1.0,
                      historical_date: Optional[str] = None) -> AnalysisResult:
        with tracer.start_as_current_span("service.analyze") as span:
            center = self.region.require(parse_coordinates(point))
            radius_km = _check_radius(radius_km)
            historical_date = _check_date(historical_date)
            span.set_attribute("point.lat", center.lat)
            span.set_attribute("point.lng", center.lng)
            span.set_attribute("radius_km", float(radius_km))
            logger.info("Analyze start lat=%s lng=%s radius_km=%s", center.lat, center.lng, radius_km)

            layers: Dict[str, Layer] = await asyncio.to_thread(self.layer_source.load_layers)
            before, after = await asyncio.gather(
                self._fetch(self.imagery.fetch_historical(center.lat, center.lng, historical_date,
                                                          self.settings.baseline_year), "before"),
                self._fetch(self.imagery.fetch_current(center.lat, center.lng), "after"),
            )
            if before is None or after is None:
                logger.warning("Imagery unavailable before=%s after=%s; using fallback",
                               before is not None, after is not None)
                detection = self.pipeline.fallback(before, after, center)
            else:
                detection = await self.pipeline.detect(before, after, center)

            result = AnalysisResult(
                has_change=detection.has_change,
                confidence=detection.confidence,
                before_image=before.meta() if before else None,
                after_image=after.meta() if after else None,
                analysis_date=detection.analysis_date or datetime.now(timezone.utc).isoformat(),
                method=detection.method,
                radius_km=float(radius_km),
            )
            if not detection.has_change:
                result.message = NO_CHANGE_MESSAGE
                logger.info("Analyze done no change confidence=%.3f method=%s", detection.confidence, detection.method)
                return result

            sites = [self.assembler.assemble(c, layers) for c in detection.changes]
            self.store.save(sites)
            result.sites = sites
            span.set_attribute("sites.count", len(sites))
            logger.info("Analyze done sites=%s method=%s", len(sites), detection.method)
            return result
