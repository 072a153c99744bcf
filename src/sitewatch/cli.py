import os, sys, json, asyncio, logging
from typing import Optional
from .config import Settings
from .errors import ValidationError
from .imagery import LocalImagery
from .service import SiteAnalyzer
from .storage import JsonFileSiteStore, filter_sites, site_statistics
from .telemetry import init_logging, init_tracing, get_tracer


logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


def _require_file(path: str, label: str) -> str:
    if not os.path.exists(path):
        raise FileNotFoundError(f"{label} not found: {path}")
    return path


async def cmd_analyze(settings: Settings, coords: str, radius_km: float, before: Optional[str],
                      after: Optional[str], date: Optional[str]):
    with tracer.start_as_current_span("cmd.analyze") as span:
        span.set_attribute("input.coords", coords)
        imagery = None
        if before or after:
            if not (before and after):
                raise ValidationError("--before and --after must be given together")
            imagery = LocalImagery(_require_file(before, "Before image"), _require_file(after, "After image"))
        analyzer = SiteAnalyzer.from_settings(settings, imagery=imagery)
        try:
            result = await analyzer.analyze(coords, radius_km=radius_km, historical_date=date)
        finally:
            await analyzer.imagery.close()
        print(json.dumps(result.model_dump(mode="json"), ensure_ascii=False))


def cmd_sites(settings: Settings, args):
    with tracer.start_as_current_span("cmd.sites") as span:
        span.set_attribute("sites.action", args.action)
        store = JsonFileSiteStore(settings.sites_path)
        if args.action == "list":
            for s in filter_sites(store.list(), args.risk, args.district, args.status, args.search):
                print(json.dumps(s.model_dump(mode="json"), ensure_ascii=False))
        elif args.action == "update":
            site = store.update(args.id, args.status, args.remarks or "")
            if site is None:
                raise ValidationError(f"Site not found: {args.id}")
            print(json.dumps(site.model_dump(mode="json"), ensure_ascii=False))
        elif args.action == "delete":
            remaining = store.delete(args.id)
            print(json.dumps({"deleted": args.id, "remaining": len(remaining)}))
        elif args.action == "stats":
            print(json.dumps(site_statistics(store.list()), ensure_ascii=False))


def main(argv=None) -> int:
    import argparse
    init_logging()
    init_tracing("sitewatch")
    ap = argparse.ArgumentParser(prog="sitewatch")
    sub = ap.add_subparsers(dest="cmd", required=True)

    a = sub.add_parser("analyze")
    a.add_argument("--coords", required=True, help="lat,lng")
    a.add_argument("--radius", type=float, default=1.0)
    a.add_argument("--before", default=None)
    a.add_argument("--after", default=None)
    a.add_argument("--date", default=None)

    s = sub.add_parser("sites")
    ss = s.add_subparsers(dest="action", required=True)
    sl = ss.add_parser("list")
    sl.add_argument("--risk", default=None)
    sl.add_argument("--district", default=None)
    sl.add_argument("--status", default=None)
    sl.add_argument("--search", default=None)
    su = ss.add_parser("update")
    su.add_argument("--id", required=True)
    su.add_argument("--status", required=True)
    su.add_argument("--remarks", default=None)
    sd = ss.add_parser("delete")
    sd.add_argument("--id", required=True)
    ss.add_parser("stats")

    args = ap.parse_args(argv)
    settings = Settings.from_env()
    logger.info("Command start cmd=%s", args.cmd)
    try:
        if args.cmd == "analyze":
            asyncio.run(cmd_analyze(settings, args.coords, args.radius, args.before, args.after, args.date))
        elif args.cmd == "sites":
            cmd_sites(settings, args)
    except (ValidationError, FileNotFoundError) as exc:
        logger.error("Command failed cmd=%s err=%s", args.cmd, exc)
        print(f"error: {exc}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
