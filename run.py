"""CLI entrypoint."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from dotenv import load_dotenv

from rankcheck import config
from rankcheck.config import ConfigurationError
from rankcheck.geo import generate_geo_grid
from rankcheck.inputs import InputValidationError, read_query_csv
from rankcheck.models import RUN_STATUS_COMPLETED, GeoGridSpec, LocaleOptions, QueryTask
from rankcheck.pipeline import rerun_campaign, run_rank_check, validate_locale
from rankcheck.reporting import ProgressReporter, ensure_dir, write_run_outputs
from rankcheck.store import CampaignNotFoundError, SqliteResultStore, campaign_tasks, new_run_id

logger = logging.getLogger("rankcheck.cli")


def _repo_root() -> Path:
    return Path(__file__).resolve().parent


def load_env(path: str = ".env", root_dir: Optional[Path] = None) -> None:
    """Load a repo-root .env file without overriding real env vars."""
    root = Path(root_dir) if root_dir else _repo_root()
    env_path = (root / path).resolve()
    if not env_path.exists():
        return
    load_dotenv(dotenv_path=env_path, override=False)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check where a brand ranks in local search results")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--preflight", action="store_true", help="Run offline checks only")
    group.add_argument(
        "--history",
        nargs=3,
        metavar=("QUERY", "BRAND", "BRANCH"),
        default=None,
        help="Print stored ranking history for one keyword/brand/branch",
    )
    group.add_argument("--list-campaigns", action="store_true", help="List saved campaigns")
    parser.add_argument("--input", type=str, default=None, help="CSV with Keywords, Brand, Branch columns")
    parser.add_argument(
        "--campaign",
        type=str,
        default=None,
        help="Campaign name: saves --input as the campaign on first use and links the run to it",
    )
    parser.add_argument("--rerun", action="store_true", help="Re-run the --campaign's saved queries")
    parser.add_argument("--description", type=str, default=None, help="Description for a new campaign")
    parser.add_argument("--gl", type=str, default=None, help="Country code (default: config)")
    parser.add_argument("--hl", type=str, default=None, help="Language code (default: config)")
    parser.add_argument("--device", choices=list(config.DEVICE_TYPES), default=None)
    parser.add_argument("--geo-grid", action="store_true", help="Search a grid of points around a center")
    parser.add_argument("--center-lat", type=float, default=None)
    parser.add_argument("--center-lng", type=float, default=None)
    parser.add_argument("--radius-km", type=float, default=None)
    parser.add_argument("--grid-size", type=int, default=None, help="Points per axis (>= 2)")
    parser.add_argument(
        "--rank-scope",
        choices=list(config.RANK_SCOPES),
        default=None,
        help="grid_point (default): rank restarts per point; query: rank continues across grid points",
    )
    parser.add_argument("--page-delay", type=float, default=None, help="Seconds between page fetches")
    parser.add_argument("--max-pages", type=int, default=None, help="Cap pages per grid point")
    parser.add_argument("--retry-max", type=int, default=None, help="Total attempts per request")
    parser.add_argument("--timeout", type=float, default=None, help="Per-request timeout in seconds")
    parser.add_argument("--max-api-calls", type=int, default=None)
    parser.add_argument(
        "--no-partial",
        action="store_true",
        help="Discard partial results when the run fails (default: keep them, status=failed)",
    )
    parser.add_argument("--db-path", type=str, default=config.RESULTS_DB_PATH)
    parser.add_argument("--no-db", action="store_true", help="Do not persist the run to SQLite")
    parser.add_argument("--out", type=str, default=config.OUTPUT_DIR)
    parser.add_argument("--config", type=str, default=None, help="Path to search_config.json")
    return parser.parse_args(argv)


def build_locale(args: argparse.Namespace, campaign: Optional[Dict[str, Any]] = None) -> LocaleOptions:
    campaign = campaign or {}
    return LocaleOptions(
        country=(args.gl or campaign.get("country") or config.DEFAULT_COUNTRY).lower(),
        language=(args.hl or campaign.get("language") or config.DEFAULT_LANGUAGE).lower(),
        device_type=args.device or config.DEFAULT_DEVICE_TYPE,
    )


def build_geo_grid(args: argparse.Namespace) -> Optional[GeoGridSpec]:
    enabled = args.geo_grid or config.GEO_GRID_ENABLED
    if not enabled:
        return None
    center_lat = args.center_lat if args.center_lat is not None else config.GEO_GRID_CENTER_LAT
    center_lng = args.center_lng if args.center_lng is not None else config.GEO_GRID_CENTER_LNG
    if center_lat is None or center_lng is None:
        raise InputValidationError("geo grid requires --center-lat and --center-lng")
    return GeoGridSpec(
        center_lat=float(center_lat),
        center_lng=float(center_lng),
        radius_km=args.radius_km if args.radius_km is not None else config.DEFAULT_GRID_RADIUS_KM,
        grid_size=args.grid_size if args.grid_size is not None else config.DEFAULT_GRID_SIZE,
    )


def apply_http_overrides(args: argparse.Namespace) -> None:
    if args.retry_max is not None:
        config.HTTP_RETRY_MAX = max(1, args.retry_max)
    if args.timeout is not None:
        config.HTTP_TIMEOUT_SECONDS = args.timeout


def run_preflight(args: argparse.Namespace) -> int:
    ok = True

    if (os.environ.get(config.SERPER_API_KEY_ENV) or "").strip():
        print("API key: OK")
    else:
        print(f"API key: MISSING ({config.SERPER_API_KEY_ENV})")
        ok = False

    try:
        locale = build_locale(args)
        validate_locale(locale)
        print(f"Locale: OK (gl={locale.country}, hl={locale.language}, device={locale.device_type})")
    except InputValidationError as exc:
        print(f"Locale: FAIL ({exc})")
        ok = False

    try:
        grid = build_geo_grid(args)
        if grid is None:
            print("Geo grid: disabled (single search point)")
        else:
            points = generate_geo_grid(grid)
            print(f"Geo grid: OK ({len(points)} points, radius {grid.radius_km} km)")
    except InputValidationError as exc:
        print(f"Geo grid: FAIL ({exc})")
        ok = False

    if args.input:
        try:
            tasks = read_query_csv(args.input)
            print(f"Input: OK ({len(tasks)} queries)")
        except InputValidationError as exc:
            print(f"Input: FAIL ({exc})")
            ok = False
    else:
        print("Input: SKIPPED (no --input)")

    print("Preflight: PASS" if ok else "Preflight: FAIL")
    return 0 if ok else 1


def print_history(db_path: str, query: str, brand: str, branch: str) -> int:
    if not Path(db_path).exists():
        print(f"Results database not found: {db_path}", file=sys.stderr)
        return 1
    with SqliteResultStore(db_path) as store:
        history = store.ranking_history(query, brand, branch)
    if not history:
        print("No history for this keyword/brand/branch")
        return 0
    for entry in history:
        position = entry["ranking_position"]
        change = entry["change"]
        trend = ""
        if change:
            trend = f" ({'+' if change > 0 else ''}{change})"
        shown = f"#{position}" if position is not None else "not found"
        print(f"{entry['created_at']}  {shown}{trend}  run={entry['run_id']}")
    return 0


def print_campaigns(db_path: str) -> int:
    if not Path(db_path).exists():
        print(f"Results database not found: {db_path}", file=sys.stderr)
        return 1
    with SqliteResultStore(db_path) as store:
        campaigns = store.list_campaigns()
        counts = {c["id"]: store.campaign_summary(c["id"])["stats"]["total_searches"] for c in campaigns}
    if not campaigns:
        print("No campaigns saved")
        return 0
    for campaign in campaigns:
        print(
            f"{campaign['name']}  queries={len(campaign_tasks(campaign))}  "
            f"gl={campaign['country']} hl={campaign['language']}  searches={counts[campaign['id']]}"
        )
    return 0


def print_campaign(db_path: str, name: str) -> int:
    if not Path(db_path).exists():
        print(f"Results database not found: {db_path}", file=sys.stderr)
        return 1
    with SqliteResultStore(db_path) as store:
        campaign = store.find_campaign(name)
        if campaign is None:
            print(f"Error: Campaign not found: {name}", file=sys.stderr)
            return 1
        summary = store.campaign_summary(campaign["id"])
    stats = summary["stats"]
    print(f"Campaign: {campaign['name']} ({campaign['id']})")
    if campaign.get("description"):
        print(campaign["description"])
    print(
        f"Saved queries: {len(campaign_tasks(campaign))} "
        f"(gl={campaign['country']}, hl={campaign['language']})"
    )
    print(f"Searches: {stats['total_searches']}, last run: {stats['last_run'] or 'never'}")
    for run in summary["searches"]:
        print(
            f"{run['created_at']}  {run['status']}  brand matches={run['total_brand_matches']}  "
            f"run={run['id']}"
        )
    return 0


def find_or_create_campaign(
    store: SqliteResultStore,
    name: str,
    tasks: Sequence[QueryTask],
    locale: LocaleOptions,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    campaign = store.find_campaign(name)
    if campaign is not None:
        return campaign
    campaign = store.create_campaign(
        name,
        tasks,
        country=locale.country,
        language=locale.language,
        description=description,
    )
    logger.info("Saved campaign %r with %s queries", campaign["name"], len(tasks))
    return campaign


def main(argv: Optional[List[str]] = None) -> int:
    load_env()
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if args.config and not Path(args.config).exists():
        print(f"Error: Config file not found: {args.config}", file=sys.stderr)
        return 1
    try:
        config.load_search_config(args.config)
    except (ValueError, OSError) as exc:
        print(f"Error: Invalid config: {exc}", file=sys.stderr)
        return 1

    if args.preflight:
        return run_preflight(args)

    if args.history:
        query, brand, branch = args.history
        return print_history(args.db_path, query, brand, branch)

    if args.list_campaigns:
        return print_campaigns(args.db_path)

    if args.rerun and not args.campaign:
        print("Error: --rerun requires --campaign", file=sys.stderr)
        return 1
    if args.rerun and args.input:
        print("Error: --rerun uses the campaign's saved queries; drop --input", file=sys.stderr)
        return 1
    if args.campaign and args.no_db:
        print("Error: --campaign needs the results database; drop --no-db", file=sys.stderr)
        return 1

    if args.campaign and not args.input and not args.rerun:
        return print_campaign(args.db_path, args.campaign)

    if not args.input and not args.rerun:
        print("Missing --input CSV", file=sys.stderr)
        return 1

    apply_http_overrides(args)
    store: Optional[SqliteResultStore] = None
    try:
        geo_grid = build_geo_grid(args)
        ensure_dir(args.out)
        reporter = ProgressReporter(
            output_path=os.path.join(args.out, "progress.json"),
            log_every=config.PROGRESS_LOG_EVERY,
            write_interval_seconds=config.PROGRESS_WRITE_INTERVAL_SECONDS,
        )
        if not args.no_db:
            store = SqliteResultStore(args.db_path)
        run_id = new_run_id()
        run_kwargs: Dict[str, Any] = dict(
            geo_grid=geo_grid,
            progress_sink=reporter,
            run_id=run_id,
            rank_scope=args.rank_scope,
            page_delay=args.page_delay,
            max_pages=args.max_pages,
            max_api_calls=args.max_api_calls,
            keep_partial_results=False if args.no_partial else None,
        )
        if args.rerun:
            campaign = store.find_campaign(args.campaign)
            if campaign is None:
                raise CampaignNotFoundError(f"Campaign not found: {args.campaign}")
            result = rerun_campaign(store, campaign["id"], locale=build_locale(args, campaign), **run_kwargs)
        else:
            tasks = read_query_csv(args.input)
            locale = build_locale(args)
            meta: Dict[str, Any] = {"source_name": Path(args.input).name}
            if args.campaign:
                campaign = find_or_create_campaign(store, args.campaign, tasks, locale, args.description)
                meta["campaign_id"] = campaign["id"]
            result = run_rank_check(tasks, locale=locale, result_sink=store, meta=meta, **run_kwargs)
        reporter.flush()
        paths = write_run_outputs(args.out, result, run_id=run_id)
    except (ConfigurationError, InputValidationError, CampaignNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:
        logger.exception("Rank check failed")
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        if store is not None:
            store.close()

    print(f"Run {run_id}: {result.status}")
    print(
        f"Queries: {result.processed_queries}/{result.total_queries}, results: {result.total_results}, "
        f"brand matches: {result.total_brand_matches}, local pack: {result.total_local_pack_matches}, "
        f"API calls: {result.api_calls_made}"
    )
    print(f"Results written to {paths['results_csv']} and {paths['results_json']}")
    if result.status != RUN_STATUS_COMPLETED:
        print(f"Error ({result.error_kind}): {result.error_message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
