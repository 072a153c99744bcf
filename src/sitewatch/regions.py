"""Connected change regions from a thresholded change mask.

The mask is sampled on a fixed stride and regions grow only through
stride-connected neighbours, so a region's pixel count and bounding box
under-count its full-resolution extent. That is the accepted price for
bounded work on large masks.
"""
from typing import List, Tuple
import logging
import numpy as np
from .types import Region
from .telemetry import get_tracer


logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class RegionExtractor:
    def __init__(self, stride: int = 4, min_pixels: int = 10, max_region_pixels: int = 1000,
                 max_regions: int = 20, threshold: float = 0.5):
        if stride < 1:
            raise ValueError("stride must be >= 1")
        self.stride = stride
        self.min_pixels = min_pixels
        self.max_region_pixels = max_region_pixels
        self.max_regions = max_regions
        self.threshold = threshold

    def extract(self, mask: np.ndarray, width: int, height: int) -> List[Region]:
        with tracer.start_as_current_span("regions.extract") as span:
            flat = np.asarray(mask, dtype=np.float32).reshape(-1)
            if flat.size < width * height:
                raise ValueError(f"mask has {flat.size} values, expected {width * height}")
            fg = flat > self.threshold
            visited = np.zeros(width * height, dtype=bool)
            regions: List[Region] = []
            for y in range(0, height, self.stride):
                row = y * width
                for x in range(0, width, self.stride):
                    idx = row + x
                    if visited[idx] or not fg[idx]:
                        continue
                    pixels, bbox = self._flood(fg, visited, x, y, width, height)
                    if len(pixels) >= self.min_pixels:
                        regions.append(Region(id=len(regions), pixels=pixels, bbox=bbox))
                        if len(regions) >= self.max_regions:
                            break
                if len(regions) >= self.max_regions:
                    break
            del visited, fg
            span.set_attribute("regions.count", len(regions))
            logger.info("Regions extracted count=%s size=%sx%s stride=%s", len(regions), width, height, self.stride)
            return regions

    def _flood(self, fg: np.ndarray, visited: np.ndarray, x0: int, y0: int,
               width: int, height: int) -> Tuple[List[Tuple[int, int]], Tuple[int, int, int, int]]:
        s = self.stride
        stack = [(x0, y0)]
        pixels: List[Tuple[int, int]] = []
        xmin = xmax = x0
        ymin = ymax = y0
        while stack and len(pixels) < self.max_region_pixels:
            x, y = stack.pop()
            if x < 0 or x >= width or y < 0 or y >= height:
                continue
            idx = y * width + x
            if visited[idx] or not fg[idx]:
                continue
            visited[idx] = True
            pixels.append((x, y))
            xmin, xmax = min(xmin, x), max(xmax, x)
            ymin, ymax = min(ymin, y), max(ymax, y)
            stack.extend(((x + s, y), (x - s, y), (x, y + s), (x, y - s)))
        return pixels, (xmin, ymin, xmax, ymax)


def scale_bbox(bbox: Tuple[int, int, int, int], from_size: Tuple[int, int],
               to_size: Tuple[int, int]) -> Tuple[float, float, float, float]:
    fw, fh = from_size
    tw, th = to_size
    sx = tw / float(fw)
    sy = th / float(fh)
    x1, y1, x2, y2 = bbox
    return (x1 * sx, y1 * sy, x2 * sx, y2 * sy)


def center_in_regions(center: Tuple[float, float], boxes: List[Tuple[float, float, float, float]]) -> bool:
    cx, cy = center
    return any(x1 <= cx <= x2 and y1 <= cy <= y2 for x1, y1, x2, y2 in boxes)
