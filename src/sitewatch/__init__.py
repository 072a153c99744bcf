"""sitewatch package."""

from .pipeline import ChangeDetectionPipeline
from .gis import GeoJSONLayerSource, SpatialPredicateEngine
from .risk import RiskScorer
from .sites import SiteAssembler
from .service import SiteAnalyzer

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ChangeDetectionPipeline",
    "GeoJSONLayerSource",
    "SpatialPredicateEngine",
    "RiskScorer",
    "SiteAssembler",
    "SiteAnalyzer",
]
