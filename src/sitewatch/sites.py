import logging
from datetime import datetime, timezone
from typing import Callable, List, Mapping, Optional, Tuple
from .gis import LayerInput, SpatialPredicateEngine
from .risk import RiskScorer
from .types import Change, Evidence, Site, SiteStatus
from .telemetry import get_tracer


logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

UNKNOWN_DISTRICT = "Unknown"

# (name, lat_min, lat_max, lng_min, lng_max); first match wins
DISTRICT_RULES: List[Tuple[str, float, float, float, float]] = [
    ("Hyderabad", 17.3, 17.5, 78.4, 78.6),
    ("Medchal", 17.5, 18.0, 78.4, 78.8),
    ("Sangareddy", 17.6, 18.0, 77.8, 78.2),
    ("Vikarabad", 17.2, 17.8, 77.5, 78.2),
    ("Rangareddy", 17.2, 17.6, 78.2, 78.8),
]


def district_for(lat: float, lng: float,
                 rules: List[Tuple[str, float, float, float, float]] = DISTRICT_RULES) -> str:
    for name, lat_min, lat_max, lng_min, lng_max in rules:
        if lat_min <= lat <= lat_max and lng_min <= lng <= lng_max:
            return name
    return UNKNOWN_DISTRICT


class SiteAssembler:
    def __init__(self, engine: Optional[SpatialPredicateEngine] = None, scorer: Optional[RiskScorer] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.engine = engine or SpatialPredicateEngine()
        self.scorer = scorer or RiskScorer()
        self.clock = clock

    def assemble(self, change: Change, layers: Optional[Mapping[str, LayerInput]]) -> Site:
        with tracer.start_as_current_span("sites.assemble") as span:
            span.set_attribute("change.id", change.id)
            lat, lng = change.coordinates.lat, change.coordinates.lng
            zone = self.engine.evaluate(lat, lng, layers)
            risk = self.scorer.score(zone.violations)
            site = Site(
                **change.model_dump(),
                risk_level=risk.level,
                risk_score=risk.score,
                violations=zone.violations,
                district=district_for(lat, lng),
                status=SiteStatus.PENDING,
                reported_date=self.clock().isoformat(),
                evidence=Evidence(before_image=change.before_image, after_image=change.after_image,
                                  coordinates=change.coordinates),
            )
            span.set_attribute("risk.level", risk.level.value)
            logger.info("Site assembled id=%s district=%s risk=%s score=%s",
                        site.id, site.district, site.risk_level.value, site.risk_score)
            return site
