import io, os, base64, asyncio, logging, math
from datetime import date as date_cls
from typing import List, Optional, Tuple
import numpy as np
import httpx
from PIL import Image
from .errors import ResourceUnavailable
from .geo import TILE_SIZE_PX, deg2num, num2deg
from .types import SatImage
from .telemetry import get_tracer


logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

ESRI_TILE_URL = "https://server.arcgisonline.com/ArcGIS/rest/services/World_Imagery/MapServer/tile/{z}/{y}/{x}"
_BACKGROUND = (232, 232, 232)
_MISSING_TILE = (208, 208, 208)


def _to_rgb_array(im: Image.Image) -> np.ndarray:
    if im.mode != "RGB":
        im = im.convert("RGB")
    return np.asarray(im, dtype=np.uint8).copy()


def _decode_bytes(data: bytes, what: str) -> np.ndarray:
    try:
        with Image.open(io.BytesIO(data)) as im:
            return _to_rgb_array(im)
    except (OSError, ValueError) as exc:
        raise ResourceUnavailable(f"cannot decode image {what}: {exc}", resource=what) from exc


async def load_rgb(image: SatImage, client: Optional[httpx.AsyncClient] = None,
                   timeout_s: float = 30.0) -> np.ndarray:
    with tracer.start_as_current_span("imagery.load_rgb") as span:
        if image.rgb is not None:
            return image.rgb
        url = image.url or ""
        span.set_attribute("image.url", url[:120])
        if url.startswith("data:"):
            try:
                payload = base64.b64decode(url.split(",", 1)[1])
            except (IndexError, ValueError) as exc:
                raise ResourceUnavailable(f"malformed data URL: {exc}", resource="data-url") from exc
            return _decode_bytes(payload, "data-url")
        if url.startswith(("http://", "https://")):
            own = client is None
            client = client or httpx.AsyncClient(timeout=timeout_s, follow_redirects=True)
            try:
                r = await client.get(url)
                r.raise_for_status()
            except httpx.HTTPError as exc:
                raise ResourceUnavailable(f"image fetch failed url={url}: {exc}", resource=url) from exc
            finally:
                if own:
                    await client.aclose()
            return _decode_bytes(r.content, url)
        if url and os.path.exists(url):
            try:
                with Image.open(url) as im:
                    return _to_rgb_array(im)
            except OSError as exc:
                raise ResourceUnavailable(f"cannot read image path={url}: {exc}", resource=url) from exc
        raise ResourceUnavailable(f"image has no readable pixels url={url!r}", resource=url)


def encode_data_url(rgb: np.ndarray, quality: int = 90) -> str:
    buf = io.BytesIO()
    Image.fromarray(rgb, mode="RGB").save(buf, format="JPEG", quality=quality)
    return "data:image/jpeg;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


class ImagerySource:
    async def fetch_image(self, lat: float, lng: float, date: Optional[str] = None) -> Optional[SatImage]:
        if date:
            return await self.fetch_historical(lat, lng, date)
        return await self.fetch_current(lat, lng)

    async def fetch_historical(self, lat: float, lng: float, date: Optional[str] = None,
                               baseline_year: int = 2006) -> Optional[SatImage]:
        raise NotImplementedError

    async def fetch_current(self, lat: float, lng: float) -> Optional[SatImage]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class EsriTileImagery(ImagerySource):
    def __init__(self, zoom: int = 15, width: int = 800, height: int = 600,
                 tile_timeout_s: float = 5.0, composite_timeout_s: float = 10.0,
                 tile_url: str = ESRI_TILE_URL, client: Optional[httpx.AsyncClient] = None):
        self.zoom = zoom
        self.width = width
        self.height = height
        self.tile_timeout_s = tile_timeout_s
        self.composite_timeout_s = composite_timeout_s
        self.tile_url = tile_url
        self.client = client or httpx.AsyncClient(timeout=tile_timeout_s)
        logger.info("Esri imagery init zoom=%s size=%sx%s tile_timeout_s=%s composite_timeout_s=%s",
                    zoom, width, height, tile_timeout_s, composite_timeout_s)

    async def close(self) -> None:
        await self.client.aclose()

    def tile_layout(self, lat: float, lng: float) -> Tuple[List[Tuple[int, int, int, int]], float, float]:
        cx, cy = deg2num(lat, lng, self.zoom)
        tiles_x = math.ceil(self.width / TILE_SIZE_PX) + 2
        tiles_y = math.ceil(self.height / TILE_SIZE_PX) + 2
        start_x = cx - tiles_x // 2
        start_y = cy - tiles_y // 2
        top_lat, left_lng = num2deg(cx, cy, self.zoom)
        bottom_lat, right_lng = num2deg(cx + 1, cy + 1, self.zoom)
        px_in_tile = (lng - left_lng) / (right_lng - left_lng) * TILE_SIZE_PX
        py_in_tile = (top_lat - lat) / (top_lat - bottom_lat) * TILE_SIZE_PX
        # canvas origin expressed in tile-grid pixels
        off_x = (cx - start_x) * TILE_SIZE_PX + px_in_tile - self.width / 2.0
        off_y = (cy - start_y) * TILE_SIZE_PX + py_in_tile - self.height / 2.0
        tiles = [(tx, ty, start_x + tx, start_y + ty) for ty in range(tiles_y) for tx in range(tiles_x)]
        return tiles, off_x, off_y

    async def _fetch_tile(self, x: int, y: int) -> Optional[Image.Image]:
        url = self.tile_url.format(z=self.zoom, x=x, y=y)
        try:
            r = await asyncio.wait_for(self.client.get(url), timeout=self.tile_timeout_s)
            r.raise_for_status()
            with Image.open(io.BytesIO(r.content)) as im:
                return im.convert("RGB")
        except (httpx.HTTPError, asyncio.TimeoutError, OSError) as exc:
            logger.warning("Tile failed x=%s y=%s err=%s", x, y, exc)
            return None

    async def composite(self, lat: float, lng: float) -> Tuple[np.ndarray, int, int]:
        with tracer.start_as_current_span("imagery.composite") as span:
            tiles, off_x, off_y = self.tile_layout(lat, lng)
            canvas = Image.new("RGB", (self.width, self.height), _BACKGROUND)
            tasks = {asyncio.ensure_future(self._fetch_tile(gx, gy)): (tx, ty) for tx, ty, gx, gy in tiles}
            done, pending = await asyncio.wait(list(tasks), timeout=self.composite_timeout_s)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            loaded = 0
            for t, (tx, ty) in tasks.items():
                pos = (int(round(tx * TILE_SIZE_PX - off_x)), int(round(ty * TILE_SIZE_PX - off_y)))
                img = t.result() if t in done else None
                if img is None:
                    canvas.paste(_MISSING_TILE, (pos[0], pos[1], pos[0] + TILE_SIZE_PX, pos[1] + TILE_SIZE_PX))
                    continue
                canvas.paste(img, pos)
                loaded += 1
            span.set_attribute("tiles.total", len(tiles))
            span.set_attribute("tiles.loaded", loaded)
            logger.info("Composite lat=%s lng=%s tiles=%s/%s pending=%s", lat, lng, loaded, len(tiles), len(pending))
            return _to_rgb_array(canvas), loaded, len(tiles)

    async def _fetch(self, lat: float, lng: float) -> Optional[Tuple[np.ndarray, str]]:
        rgb, loaded, total = await self.composite(lat, lng)
        if loaded == 0:
            logger.warning("Composite empty lat=%s lng=%s tiles=%s", lat, lng, total)
            return None
        return rgb, encode_data_url(rgb)

    async def fetch_historical(self, lat: float, lng: float, date: Optional[str] = None,
                               baseline_year: int = 2006) -> Optional[SatImage]:
        out = await self._fetch(lat, lng)
        if out is None:
            return None
        rgb, url = out
        hist_date = date or f"{baseline_year}-06-15"
        year = int(hist_date[:4])
        return SatImage(
            url=url, width=self.width, height=self.height, date=hist_date,
            source=f"Historical Baseline ({baseline_year})", year=year,
            years_back=date_cls.today().year - year,
            metadata={"resolution": "250m" if year >= 2012 else "500m", "sensor": "Various Satellite",
                      "data_source": "Esri World Imagery"},
            rgb=rgb,
        )

    async def fetch_current(self, lat: float, lng: float) -> Optional[SatImage]:
        out = await self._fetch(lat, lng)
        if out is None:
            return None
        rgb, url = out
        today = date_cls.today()
        return SatImage(
            url=url, width=self.width, height=self.height, date=today.isoformat(),
            source="Current Satellite Imagery", year=today.year, years_back=0,
            metadata={"resolution": "0.3m - 1m", "sensor": "Various (High-resolution satellite)",
                      "data_source": "Esri World Imagery"},
            rgb=rgb,
        )


class LocalImagery(ImagerySource):
    def __init__(self, before_path: str, after_path: str):
        self.before_path = before_path
        self.after_path = after_path

    def _read(self, path: str, source: str, date: Optional[str]) -> Optional[SatImage]:
        if not os.path.exists(path):
            logger.warning("Local image missing path=%s", path)
            return None
        with Image.open(path) as im:
            rgb = _to_rgb_array(im)
        year = int(date[:4]) if date else None
        return SatImage(url=path, width=rgb.shape[1], height=rgb.shape[0], date=date, source=source,
                        year=year, years_back=(date_cls.today().year - year) if year else None, rgb=rgb)

    async def fetch_historical(self, lat: float, lng: float, date: Optional[str] = None,
                               baseline_year: int = 2006) -> Optional[SatImage]:
        return await asyncio.to_thread(self._read, self.before_path, "Local before image",
                                       date or f"{baseline_year}-06-15")

    async def fetch_current(self, lat: float, lng: float) -> Optional[SatImage]:
        return await asyncio.to_thread(self._read, self.after_path, "Local after image",
                                       date_cls.today().isoformat())
