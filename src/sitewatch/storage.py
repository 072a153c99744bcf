import os, json, logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union
from pydantic import ValidationError as PydanticValidationError
from .errors import ValidationError
from .types import RiskLevel, Site, SiteStatus
from .telemetry import get_tracer


logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


def parse_status(value: Union[str, SiteStatus]) -> SiteStatus:
    try:
        return SiteStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown site status: {value!r}") from None


class SiteStore:
    def list(self) -> List[Site]:
        raise NotImplementedError

    def _write(self, sites: List[Site]) -> None:
        raise NotImplementedError

    def get(self, site_id: str) -> Optional[Site]:
        for s in self.list():
            if s.id == site_id:
                return s
        return None

    def save(self, sites: Sequence[Site]) -> None:
        # keyed by id: a re-detected site replaces its earlier record in place,
        # keeping the review workflow fields of the stored copy
        with tracer.start_as_current_span("storage.save") as span:
            span.set_attribute("sites.count", len(sites))
            current = self.list()
            index = {s.id: i for i, s in enumerate(current)}
            replaced = 0
            for site in sites:
                i = index.get(site.id)
                if i is None:
                    index[site.id] = len(current)
                    current.append(site)
                    continue
                old = current[i]
                current[i] = site.model_copy(update={
                    "status": old.status,
                    "remarks": old.remarks,
                    "reported_date": old.reported_date,
                    "updated_date": old.updated_date,
                })
                replaced += 1
            self._write(current)
            span.set_attribute("sites.replaced", replaced)
            logger.info("Sites saved count=%s replaced=%s total=%s", len(sites), replaced, len(current))

    def update(self, site_id: str, status: Union[str, SiteStatus], remarks: str = "") -> Optional[Site]:
        new_status = parse_status(status)
        sites = self.list()
        for i, s in enumerate(sites):
            if s.id != site_id:
                continue
            sites[i] = s.model_copy(update={
                "status": new_status,
                "remarks": remarks,
                "updated_date": datetime.now(timezone.utc).isoformat(),
            })
            self._write(sites)
            logger.info("Site updated id=%s status=%s", site_id, new_status.value)
            return sites[i]
        logger.warning("Site update: id not found id=%s", site_id)
        return None

    def delete(self, site_id: str) -> List[Site]:
        sites = [s for s in self.list() if s.id != site_id]
        self._write(sites)
        logger.info("Site deleted id=%s remaining=%s", site_id, len(sites))
        return sites


class InMemorySiteStore(SiteStore):
    def __init__(self, sites: Optional[Sequence[Site]] = None):
        self._sites: List[Site] = list(sites or [])

    def list(self) -> List[Site]:
        return list(self._sites)

    def _write(self, sites: List[Site]) -> None:
        self._sites = list(sites)


class JsonFileSiteStore(SiteStore):
    def __init__(self, path: str):
        self.path = path

    def list(self) -> List[Site]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            return [Site.model_validate(r) for r in raw]
        except (OSError, json.JSONDecodeError, PydanticValidationError, TypeError):
            logger.exception("Sites file unreadable path=%s; treating as empty", self.path)
            return []

    def _write(self, sites: List[Site]) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump([s.model_dump(mode="json") for s in sites], f, ensure_ascii=False)
        os.replace(tmp, self.path)


def filter_sites(sites: Sequence[Site], risk_level: Optional[str] = None, district: Optional[str] = None,
                 status: Optional[str] = None, search: Optional[str] = None) -> List[Site]:
    out = list(sites)
    if risk_level:
        out = [s for s in out if s.risk_level.value == risk_level]
    if district:
        out = [s for s in out if s.district == district]
    if status:
        out = [s for s in out if s.status.value == status]
    if search:
        q = search.lower()
        out = [s for s in out
               if q in s.type.lower() or q in s.district.lower()
               or any(q in v.type.value.lower() for v in s.violations)]
    return out


def site_statistics(sites: Sequence[Site]) -> Dict[str, Any]:
    by_district: Dict[str, int] = {}
    for s in sites:
        by_district[s.district] = by_district.get(s.district, 0) + 1
    return {
        "total": len(sites),
        "by_risk_level": {lvl.value: sum(1 for s in sites if s.risk_level == lvl)
                          for lvl in (RiskLevel.HIGH, RiskLevel.MEDIUM, RiskLevel.LOW)},
        "by_status": {st.value: sum(1 for s in sites if s.status == st) for st in SiteStatus},
        "by_district": by_district,
    }
