#!/usr/bin/env python3
"""
SVerify Command Line Interface

Usage:
    sverify serve [--host HOST] [--port PORT]
    sverify diagnose
    sverify lookup <ip>
    sverify reset-ip <ip>
    sverify probe [--base-url URL] [--ip IP]
"""

import argparse
import json
import os
import platform
import sys

from . import config
from .logging_config import configure_logging


def cmd_serve(args):
    """Run the HTTP server."""
    import uvicorn

    configure_logging(config.LOG_LEVEL, config.LOG_JSON, config.LOG_FILE or None)
    uvicorn.run("sverify.main:app", host=args.host, port=args.port, log_config=None)
    return 0


def cmd_diagnose(args):
    """Report environment and configuration health."""
    from .store import JsonFileTicketStore, get_ticket_store

    print("SVerify diagnostic")
    print("==================")
    print(f"Python version:    {platform.python_version()}")
    print(f"Working directory: {os.getcwd()}")
    print(f"Environment:       {config.ENV}")
    print(f"Store backend:     {config.TICKET_STORE_BACKEND}")

    ok = True
    store = get_ticket_store()
    if isinstance(store, JsonFileTicketStore):
        if store.ensure_exists():
            print(f"[WARN] {store.path} not found, created empty store")
        else:
            print(f"[OK]   {store.path} found")
    print(f"[OK]   {len(store.all())} ticket(s) stored")

    for name, exists in config.validate_config().items():
        print(f"[{'OK  ' if exists else 'FAIL'}] {name}")
        ok = ok and exists

    try:
        from .main import app
        print(f"[OK]   application loaded ({len(app.routes)} routes)")
    except Exception as e:
        print(f"[FAIL] application failed to load: {e}")
        ok = False

    store.close()
    return 0 if ok else 1


def cmd_lookup(args):
    """Check whether an identifier holds a valid ticket."""
    from .store import get_ticket_store

    store = get_ticket_store()
    ticket = store.get(args.ip)
    result = {"ip": args.ip, "valid": store.lookup(args.ip)}
    if ticket is not None:
        result["ticket"] = ticket.to_record()
    print(json.dumps(result, indent=2))
    store.close()
    return 0


def cmd_reset_ip(args):
    """Remove the ticket for an identifier."""
    from .store import get_ticket_store

    store = get_ticket_store()
    removed = store.remove(args.ip)
    store.close()
    if removed:
        print(f"Removed ticket for {args.ip}")
        return 0
    print(f"No ticket stored for {args.ip}")
    return 1


def cmd_probe(args):
    """Exercise the HTTP API of a running server."""
    import requests

    base = args.base_url.rstrip("/")
    clean_checks = {
        "isEmbedded": False,
        "isBot": False,
        "hasAdBlock": False,
        "isIncognito": False,
        "isCleanLoad": True,
    }
    failures = 0

    steps = [
        ("POST /verify (before)", lambda: requests.post(f"{base}/verify", json={"ip": args.ip}, timeout=10)),
        ("POST /addtemp", lambda: requests.post(
            f"{base}/addtemp", json={"ip": args.ip, "browserChecks": clean_checks}, timeout=10)),
        ("POST /verify (after)", lambda: requests.post(f"{base}/verify", json={"ip": args.ip}, timeout=10)),
        ("GET /addtemp", lambda: requests.get(f"{base}/addtemp", timeout=10)),
    ]
    for label, call in steps:
        try:
            response = call()
        except requests.RequestException as e:
            print(f"[FAIL] {label}: {e}")
            failures += 1
            continue
        if response.headers.get("content-type", "").startswith("application/json"):
            detail = json.dumps(response.json())
        else:
            detail = f"{len(response.text)} characters"
        print(f"[{response.status_code}] {label}: {detail}")

    return 1 if failures else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sverify", description="SVerify admission gate")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="run the HTTP server")
    p.add_argument("--host", default=config.HOST)
    p.add_argument("--port", type=int, default=config.PORT)
    p.set_defaults(func=cmd_serve)

    p = sub.add_parser("diagnose", help="check environment and configuration")
    p.set_defaults(func=cmd_diagnose)

    p = sub.add_parser("lookup", help="show the ticket for an IP")
    p.add_argument("ip")
    p.set_defaults(func=cmd_lookup)

    p = sub.add_parser("reset-ip", help="remove the ticket for an IP")
    p.add_argument("ip")
    p.set_defaults(func=cmd_reset_ip)

    p = sub.add_parser("probe", help="smoke-test a running server")
    p.add_argument("--base-url", default=f"http://localhost:{config.PORT}")
    p.add_argument("--ip", default="192.168.1.100")
    p.set_defaults(func=cmd_probe)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
