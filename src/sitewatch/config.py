import os
from typing import List, Optional
from pydantic import BaseModel, Field


def _env_flag(key: str, default: bool = False) -> bool:
    val = os.environ.get(key)
    if val is None:
        return default
    return val.strip().lower() in ("1", "true", "yes", "y", "on")


def _parse_list(value: str, fallback: List[str]) -> List[str]:
    if not value:
        return fallback
    sep = "|" if "|" in value else ","
    items = [p.strip() for p in value.split(sep)]
    items = [p for p in items if p]
    return items if items else fallback


_DEFAULT_GIS_BASE_PATHS = ["hyderabad-open-gis-data-master", "GENERAL LAYERS"]


class Settings(BaseModel):
    change_model_path: str = "models/unet-change-detection/model.pt"
    detection_model_path: str = "models/mask-rcnn-buildings/model.pt"
    model_device: str = "cpu"
    model_cache_dir: str = ".model_cache"
    change_input_size: int = Field(default=512, gt=0)
    detection_input_size: int = Field(default=800, gt=0)
    mask_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    detection_score_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    max_detections: int = Field(default=100, gt=0)
    region_stride: int = Field(default=4, gt=0)
    region_min_pixels: int = Field(default=10, gt=0)
    region_max_pixels: int = Field(default=1000, gt=0)
    max_regions: int = Field(default=20, gt=0)
    georef_zoom: int = Field(default=14, ge=0)
    area_scale: float = Field(default=0.5, gt=0.0)
    min_area_m2: float = Field(default=50.0, gt=0.0)
    fallback_seed: Optional[int] = None
    offload_cpu: bool = False
    gis_base_paths: List[str] = Field(default_factory=lambda: list(_DEFAULT_GIS_BASE_PATHS))
    sites_path: str = "data/detected_sites.json"
    imagery_zoom: int = Field(default=15, ge=0)
    imagery_width: int = Field(default=800, gt=0)
    imagery_height: int = Field(default=600, gt=0)
    tile_timeout_s: float = Field(default=5.0, gt=0.0)
    composite_timeout_s: float = Field(default=10.0, gt=0.0)
    baseline_year: int = 2006

    @classmethod
    def from_env(cls) -> "Settings":
        seed_raw = os.environ.get("FALLBACK_SEED", "").strip()
        return cls(
            change_model_path=os.environ.get("CHANGE_MODEL", "models/unet-change-detection/model.pt"),
            detection_model_path=os.environ.get("DETECTION_MODEL", "models/mask-rcnn-buildings/model.pt"),
            model_device=os.environ.get("MODEL_DEVICE", "cpu"),
            model_cache_dir=os.environ.get("MODEL_CACHE_DIR", ".model_cache"),
            change_input_size=int(os.environ.get("CHANGE_INPUT_SIZE", "512")),
            detection_input_size=int(os.environ.get("DETECTION_INPUT_SIZE", "800")),
            mask_threshold=float(os.environ.get("MASK_THRESHOLD", "0.5")),
            detection_score_threshold=float(os.environ.get("DET_SCORE_THR", "0.5")),
            max_detections=int(os.environ.get("DET_MAX", "100")),
            region_stride=int(os.environ.get("REGION_STRIDE", "4")),
            region_min_pixels=int(os.environ.get("REGION_MIN_PIXELS", "10")),
            region_max_pixels=int(os.environ.get("REGION_MAX_PIXELS", "1000")),
            max_regions=int(os.environ.get("MAX_REGIONS", "20")),
            georef_zoom=int(os.environ.get("GEOREF_ZOOM", "14")),
            area_scale=float(os.environ.get("AREA_SCALE", "0.5")),
            min_area_m2=float(os.environ.get("MIN_AREA_M2", "50")),
            fallback_seed=int(seed_raw) if seed_raw else None,
            offload_cpu=_env_flag("ASYNC_OFFLOAD_CPU", default=False),
            gis_base_paths=_parse_list(os.environ.get("GIS_BASE_PATHS", ""), list(_DEFAULT_GIS_BASE_PATHS)),
            sites_path=os.environ.get("SITES_PATH", "data/detected_sites.json"),
            imagery_zoom=int(os.environ.get("IMAGERY_ZOOM", "15")),
            imagery_width=int(os.environ.get("IMAGERY_WIDTH", "800")),
            imagery_height=int(os.environ.get("IMAGERY_HEIGHT", "600")),
            tile_timeout_s=float(os.environ.get("TILE_TIMEOUT_S", "5.0")),
            composite_timeout_s=float(os.environ.get("COMPOSITE_TIMEOUT_S", "10.0")),
            baseline_year=int(os.environ.get("BASELINE_YEAR", "2006")),
        )
