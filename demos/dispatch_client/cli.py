#!/usr/bin/env python3

"""
Run the Dispatch workflow against a server.

Usage:
  dispatch-workflow --server example.l2l.com --site 1 --user alice --apikey KEY

Each option falls back to an environment variable when it is not given:
  DISPATCH_SERVER, DISPATCH_SITE, DISPATCH_USER, DISPATCH_API_KEY,
  DISPATCH_TIMEZONE

Prefer DISPATCH_API_KEY over --apikey: the API key must be kept secret, and
command lines end up in shell history and process listings.
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from .dispatch_api import DispatchClient, DispatchError, SessionContext
from .workflow import DispatchWorkflow, site_clock

ENV_VARS = {
    "server": "DISPATCH_SERVER",
    "site": "DISPATCH_SITE",
    "user": "DISPATCH_USER",
    "apikey": "DISPATCH_API_KEY",
    "timezone": "DISPATCH_TIMEZONE",
}

REQUIRED = ("server", "site", "user", "apikey")


def load_config_value(key: str, value: Optional[str]) -> Optional[str]:
    # Command line wins, then the environment
    if value:
        return value
    env_name = ENV_VARS.get(key)
    if not env_name:
        return None
    return os.environ.get(env_name) or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dispatch-workflow",
        description="Exercise the Dispatch API: resources, labor, cycle counts, dispatches and production.",
    )
    parser.add_argument("--server", help="Hostname of the Dispatch server")
    parser.add_argument("--site", help="Site id to operate against")
    parser.add_argument("--user", help="Username of the user to clock in and out")
    parser.add_argument("--apikey", help="API key used for authentication")
    parser.add_argument("--timezone", help="IANA timezone of the site (default: this host's zone)")
    parser.add_argument("--timeout", type=float, default=30, help="Request timeout in seconds (default: 30)")
    parser.add_argument("--dbg", action="store_true", help="Print out verbose API output for debugging")
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)

    for key in ENV_VARS:
        setattr(args, key, load_config_value(key, getattr(args, key)))

    missing = [key for key in REQUIRED if not getattr(args, key)]
    if missing:
        parser.error(f"Missing required arguments: {', '.join(missing)}")

    if args.timeout <= 0:
        parser.error(f"--timeout must be greater than 0, got {args.timeout:g}")

    try:
        args.clock = site_clock(args.timezone)
    except ValueError as e:
        parser.error(str(e))

    return args


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.dbg else logging.INFO,
        format="%(message)s",
    )
    # urllib3 logs full request lines, query string (and API key) included
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    session = SessionContext.for_server(args.server, site=args.site, api_key=args.apikey)
    client = DispatchClient(session, timeout=args.timeout)
    workflow = DispatchWorkflow(client, args.user, clock=args.clock)

    try:
        context = workflow.run()
    except DispatchError as e:
        print(f"✗ Workflow aborted: {e}", file=sys.stderr)
        return 1

    print()
    print("=" * 60)
    print("Dispatch workflow complete!")
    print("=" * 60)
    print(f"Site: {context.site.description}")
    print(f"Line: {context.line.code}")
    print(f"Machine: {context.machine.code}")
    print(f"Dispatch opened and closed: {context.dispatch.id}")
    print(f"Production sample: {context.pitch_sample.actual} actual / {context.pitch_sample.scrap} scrap")
    return 0


if __name__ == "__main__":
    sys.exit(main())
