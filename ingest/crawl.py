"""CLI entrypoint for differential crawl runs and checkpoint status."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys
from typing import Any

if __package__ in {None, ""}:
    repo_root = Path(__file__).resolve().parents[1]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))

from ingest.crawler import (
    CrawlConfig,
    CrawlInProgressError,
    CrawlService,
    InvalidRequestError,
    atomic_write_json,
    load_config,
)
from ingest.crawler.constants import DEFAULT_CRAWL_LIMIT

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID_REQUEST = 2
EXIT_IN_PROGRESS = 3


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the differential pet-listing crawler.",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to JSON/YAML crawl config. CRAWLER_* env vars override it.",
    )
    parser.add_argument(
        "--data_dir",
        type=Path,
        default=None,
        help="State root for the SQLite database, image blobs, and queue files.",
    )
    parser.add_argument(
        "--log_dir",
        type=Path,
        default=Path("logs"),
        help="Directory for crawl.log.",
    )
    parser.add_argument("--max_pages", type=int, default=None)
    parser.add_argument("--request_delay_seconds", type=float, default=None)
    parser.add_argument("--timeout_seconds", type=float, default=None)
    parser.add_argument("--user_agent", type=str, default=None)
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    crawl = subparsers.add_parser("crawl", help="Crawl one (source, type) pair.")
    crawl.add_argument("source", help="Source id, e.g. pet-home.")
    crawl.add_argument("pet_type", help="dog or cat.")
    _add_run_options(crawl)

    crawl_all = subparsers.add_parser("crawl-all", help="Crawl every configured pair concurrently.")
    _add_run_options(crawl_all)

    status = subparsers.add_parser("status", help="Show stored checkpoints.")
    status.add_argument("source", nargs="?", default=None)
    status.add_argument("pet_type", nargs="?", default=None)

    return parser.parse_args(argv)


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--limit",
        type=int,
        default=DEFAULT_CRAWL_LIMIT,
        help="Maximum items to process per pair (1..100).",
    )
    parser.add_argument(
        "--full-scan",
        dest="full_scan",
        action="store_true",
        help="Ignore the checkpoint when scanning (it is still written at the end).",
    )
    parser.add_argument(
        "--print_stats_json",
        action="store_true",
        help="Print full stats JSON after the run.",
    )


def build_config(args: argparse.Namespace) -> CrawlConfig:
    payload = load_config(args.config).to_dict()

    if args.data_dir is not None:
        payload["data_dir"] = str(args.data_dir)
    if args.max_pages is not None:
        payload["max_pages"] = args.max_pages
    if args.request_delay_seconds is not None:
        payload["request_delay_seconds"] = args.request_delay_seconds
    if args.timeout_seconds is not None:
        payload["timeout_seconds"] = args.timeout_seconds
    if args.user_agent is not None:
        payload["user_agent"] = args.user_agent

    return CrawlConfig.from_dict(payload)


def setup_logging(log_dir: Path, verbose: bool) -> None:
    log_level = logging.DEBUG if verbose else logging.INFO

    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "crawl.log"

    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setLevel(log_level)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    # urllib3 logs every connection at DEBUG.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def save_run_report(config: CrawlConfig, payload: dict[str, Any]) -> Path:
    """Write the latest trigger payload for a pair under `<data_dir>/runs/`."""

    path = Path(config.data_dir) / "runs" / f"{payload['source']}_{payload['petType']}.json"
    atomic_write_json(path, payload)
    return path


def print_summary(payloads: list[dict[str, Any]], stats: dict[str, Any], *, print_stats_json: bool) -> None:
    print("\n=== Crawl Complete ===")
    for payload in payloads:
        print(json.dumps(payload, ensure_ascii=False, indent=2))

    print("\n--- Core Stats ---")
    for key in [
        "list_pages_ok",
        "list_pages_error",
        "details_fetched",
        "items_new",
        "items_updated",
        "items_skipped_known",
        "item_errors",
        "images_archived",
        "messages_sent",
        "messages_dead_lettered",
        "duration_seconds",
    ]:
        if key in stats:
            print(f"{key}: {stats[key]}")

    if print_stats_json:
        print("\n--- Full Stats JSON ---")
        print(json.dumps(stats, indent=2, sort_keys=True))


def run_command(args: argparse.Namespace, service: CrawlService) -> int:
    if args.command == "status":
        rows = service.status(args.source, args.pet_type)
        print(json.dumps(rows, ensure_ascii=False, indent=2))
        return EXIT_OK

    if args.command == "crawl":
        payloads = [
            service.trigger(args.source, args.pet_type, args.limit, differential=not args.full_scan)
        ]
    else:
        payloads = service.trigger_all(limit=args.limit, differential=not args.full_scan)

    for payload in payloads:
        if "result" in payload:
            save_run_report(service.config, payload)

    print_summary(payloads, service.stats.to_json(), print_stats_json=args.print_stats_json)
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_dir, verbose=args.verbose)

    try:
        config = build_config(args)
    except Exception as exc:
        logging.error("Failed to build config: %s", exc)
        return EXIT_INVALID_REQUEST

    logging.info(
        "Starting %s: data_dir=%s, sources=%s",
        args.command,
        config.data_dir,
        ",".join(config.source_ids),
    )

    try:
        service = CrawlService(config)
        return run_command(args, service)
    except InvalidRequestError as exc:
        logging.error("Invalid request: %s", exc)
        return EXIT_INVALID_REQUEST
    except CrawlInProgressError as exc:
        logging.error("%s", exc)
        return EXIT_IN_PROGRESS
    except KeyboardInterrupt:
        logging.error("Interrupted by user")
        return 130
    except Exception:
        logging.exception("Crawl execution failed")
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
