"""
RingStreak CLI — entry point for all operations.

Usage:
    ringstreak lookup <phone>      # Resolve a number against Streak
    ringstreak normalize <phone>   # Show E.164 form and search variants
    ringstreak serve               # Start the lookup service
    ringstreak version             # Show version
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging

from dotenv import load_dotenv


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="ringstreak",
        description="RingStreak — identify callers against Streak CRM.",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")

    subparsers = parser.add_subparsers(dest="command")

    # lookup
    lookup_parser = subparsers.add_parser("lookup", help="Resolve a phone number")
    lookup_parser.add_argument("phone", help="Phone number in any format")
    lookup_parser.add_argument("--json", action="store_true", help="Print the raw response")

    # normalize
    normalize_parser = subparsers.add_parser("normalize", help="Show E.164 form and variants")
    normalize_parser.add_argument("phone", help="Phone number in any format")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the lookup service")
    serve_parser.add_argument("--host", default=None, help="Bind address")
    serve_parser.add_argument("--port", type=int, default=None, help="Port")

    # version
    subparsers.add_parser("version", help="Show version")

    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        from ringstreak import __version__

        print(f"ringstreak {__version__}")
        return 0

    load_dotenv()
    _setup_logging()

    if args.command == "lookup":
        return _cmd_lookup(args)
    elif args.command == "normalize":
        return _cmd_normalize(args)
    elif args.command == "serve":
        return _cmd_serve(args)

    parser.print_help()
    return 0


def _setup_logging() -> None:
    from ringstreak.config import get_config

    logging.basicConfig(
        level=getattr(logging, get_config().log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _cmd_normalize(args: argparse.Namespace) -> int:
    from ringstreak.lookup.normalize import normalize, variants

    e164 = normalize(args.phone)
    if not e164:
        print(f"Not a phone number: {args.phone!r}")
        return 1
    print(e164)
    for form in variants(e164):
        print(f"  {form}")
    return 0


async def _run_lookup(phone: str):
    from ringstreak.config import get_config
    from ringstreak.crm.client import StreakClient
    from ringstreak.crm.enrichment import StageCache
    from ringstreak.lookup.engine import ResolutionEngine

    cfg = get_config()
    async with StreakClient(cfg.streak) as client:
        engine = ResolutionEngine(client, StageCache(), max_matches=cfg.max_matches)
        return await engine.resolve(phone)


def _cmd_lookup(args: argparse.Namespace) -> int:
    from ringstreak.crm.client import StreakAuthError

    try:
        response = asyncio.run(_run_lookup(args.phone))
    except StreakAuthError as e:
        print(f"Lookup failed: {e}")
        return 2

    if args.json:
        print(json.dumps(response.to_dict(), indent=2))
        return 0

    if response.normalized is None:
        print(f"Not a phone number: {args.phone!r}")
        return 1
    if not response.matches:
        print(f"No match for {response.normalized}")
        return 0

    print(f"{response.normalized}:")
    for match in response.matches:
        person = match.person.name or match.person.key
        if match.record is None:
            print(f"  {person} (no box linked yet)  {match.links.person_link}")
            continue
        stage = f" · {match.record.stage_name}" if match.record.stage_name else ""
        print(f"  {match.record.name or match.record.key}{stage}  [{person}]  {match.links.record_link}")
        if match.record.last_email_preview:
            print(f"      {match.record.last_email_preview}")
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from ringstreak.config import get_config

    cfg = get_config()
    host = args.host or cfg.host
    port = args.port or cfg.port
    print(f"Starting RingStreak lookup service on {host}:{port}...")
    uvicorn.run("ringstreak.api.service:app", host=host, port=port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
