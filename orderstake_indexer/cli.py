import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .config import load_config
from .errors import ChainConnectionError, ConfigError, NetworkMismatchError
from .log import configure_logging
from .service import IndexerService
from .store import RecordStore, json_default

log = logging.getLogger(__name__)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=json_default, ensure_ascii=True, indent=2)


def _parse_filters(pairs: Optional[List[str]]) -> Dict[str, str]:
    filters = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"filter must look like key=value, got {pair!r}")
        filters[key] = value
    return filters


async def _run_service(service: IndexerService, once: bool) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.stop)
        except NotImplementedError:
            # not supported on Windows event loops
            pass
    await service.run(once=once)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="OrderStake Event Indexer")
    parser.add_argument("--config", default="config.json", help="Path to config JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Backfill, then keep polling until interrupted")
    sub.add_parser("backfill", help="Backfill every enabled engine to the current head and exit")

    events_parser = sub.add_parser("events", help="Query a stream")
    events_parser.add_argument("stream", type=str)
    events_parser.add_argument("--filter", action="append", metavar="KEY=VALUE", default=None)
    events_parser.add_argument("--offset", type=int, default=0)
    events_parser.add_argument("--limit", type=int, default=None)

    projections_parser = sub.add_parser("projections", help="Show pool / collection snapshots")
    projections_parser.add_argument("--key", type=str, default=None, help="Contract address")

    sub.add_parser("stats", help="Per-stream record counts and checkpoints")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ConfigError as exc:
        configure_logging()
        log.error("%s", exc)
        return 2
    configure_logging(cfg.log_level)

    if args.command in ("run", "backfill"):
        service = IndexerService(cfg)
        try:
            asyncio.run(_run_service(service, once=args.command == "backfill"))
        except NetworkMismatchError as exc:
            log.error("%s", exc)
            return 3
        except ChainConnectionError as exc:
            log.error("%s", exc)
            return 4
        return 0

    store = RecordStore(cfg.data_dir)

    if args.command == "events":
        try:
            filters = _parse_filters(args.filter)
            records = store.query(args.stream, filters, offset=args.offset, limit=args.limit)
        except (argparse.ArgumentTypeError, ValueError) as exc:
            parser.error(str(exc))
        print(_json_dumps(records))
        return 0

    if args.command == "projections":
        if args.key:
            projection = store.get_projection(args.key)
            if projection is None:
                log.error("No projection for %s", args.key)
                return 1
            print(_json_dumps(projection))
        else:
            print(_json_dumps(store.get_all_projections()))
        return 0

    if args.command == "stats":
        print(_json_dumps(store.stats()))
        return 0

    return 1


if __name__ == "__main__":
    sys.exit(main())
