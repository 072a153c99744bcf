from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import numpy as np
from pydantic import BaseModel, Field


class Severity(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class SiteStatus(str, Enum):
    PENDING = "PENDING"
    UNDER_INVESTIGATION = "UNDER_INVESTIGATION"
    ACTION_TAKEN = "ACTION_TAKEN"
    RESOLVED = "RESOLVED"


class ViolationKind(str, Enum):
    WATERBODY = "Waterbody Encroachment"
    WATERWAY_BUFFER = "Waterway Buffer Violation"
    FLOOD_RISK = "Flood Risk Zone"
    GREEN_BELT = "Green Belt Encroachment"
    CHANNEL_PROXIMITY = "Channel Proximity"


@dataclass(frozen=True)
class SatImage:
    url: str
    width: int
    height: int
    date: Optional[str] = None
    source: str = ""
    year: Optional[int] = None
    years_back: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    rgb: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    def meta(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "width": self.width,
            "height": self.height,
            "date": self.date,
            "source": self.source,
            "year": self.year,
            "years_back": self.years_back,
            "metadata": dict(self.metadata),
        }


@dataclass
class Region:
    id: int
    pixels: List[Tuple[int, int]]
    bbox: Tuple[int, int, int, int]


@dataclass
class ChangeMask:
    width: int
    height: int
    probs: np.ndarray = field(repr=False)
    regions: List[Region] = field(default_factory=list)


class GeoPoint(BaseModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)


class Detection(BaseModel):
    det_id: str
    bbox_px: Tuple[float, float, float, float]
    cls: int = 0
    confidence: float = Field(ge=0.0, le=1.0)

    def center(self) -> Tuple[float, float]:
        x, y, w, h = self.bbox_px
        return x + w / 2.0, y + h / 2.0


class Change(BaseModel):
    id: str
    coordinates: GeoPoint
    area: float = Field(gt=0.0)
    type: str
    confidence: float = Field(ge=0.0, le=1.0)
    detected_date: str
    before_image: Optional[str] = None
    after_image: Optional[str] = None
    bbox: Optional[Tuple[float, float, float, float]] = None
    detection_method: str


class ChangeDetectionResult(BaseModel):
    has_change: bool
    confidence: float
    changes: List[Change] = Field(default_factory=list)
    analysis_date: str
    method: str
    change_regions: Optional[int] = None
    buildings_detected: Optional[int] = None
    states: List[str] = Field(default_factory=list)


class Violation(BaseModel):
    type: ViolationKind
    feature: str
    severity: Severity
    distance: Optional[str] = None


class ZoneCheck(BaseModel):
    in_waterbody: bool = False
    in_waterway: bool = False
    in_vulnerable_zone: bool = False
    in_green_belt: bool = False
    near_channel: bool = False
    violations: List[Violation] = Field(default_factory=list)


class RiskAssessment(BaseModel):
    level: RiskLevel
    score: int = Field(ge=0)


class Evidence(BaseModel):
    before_image: Optional[str] = None
    after_image: Optional[str] = None
    coordinates: GeoPoint


class Site(Change):
    risk_level: RiskLevel
    risk_score: int = Field(ge=0)
    violations: List[Violation] = Field(default_factory=list)
    district: str
    status: SiteStatus = SiteStatus.PENDING
    reported_date: str
    updated_date: Optional[str] = None
    remarks: str = ""
    evidence: Evidence


class AnalysisResult(BaseModel):
    has_change: bool
    message: Optional[str] = None
    sites: Optional[List[Site]] = None
    confidence: float
    before_image: Optional[Dict[str, Any]] = None
    after_image: Optional[Dict[str, Any]] = None
    analysis_date: str
    method: str
    radius_km: float
