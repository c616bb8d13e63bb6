# logrelay/cli.py
from __future__ import annotations
import argparse
import json
import sys
from typing import List, Optional

from logrelay.config import ConsumerSettings, ServerSettings
from logrelay.logging import configure_logging


def _serve(args: argparse.Namespace) -> int:
    import uvicorn
    from logrelay.main import create_app

    overrides = {k: v for k, v in (("host", args.host), ("port", args.port)) if v is not None}
    settings = ServerSettings(**overrides)
    configure_logging(settings.log_level, settings.log_format)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port,
                log_config=None, log_level=settings.log_level)
    return 0


def _logs(args: argparse.Namespace) -> int:
    from logrelay.consumer import Formatted, StreamConsumer

    overrides = {"backend_url": args.backend} if args.backend else {}
    settings = ConsumerSettings(**overrides)
    configure_logging("warning", settings.log_format)
    consumer = StreamConsumer(settings, auto_reconnect=False)
    try:
        answer = consumer.get_logs(args.app, args.origin, args.topic, args.lines, args.filter)
    finally:
        consumer.close()
    print(answer.text)
    return 0 if isinstance(answer, Formatted) else 1


def _status(args: argparse.Namespace) -> int:
    import httpx

    settings = ConsumerSettings(**({"backend_url": args.backend} if args.backend else {}))
    try:
        resp = httpx.get(f"{settings.backend_url.rstrip('/')}/api/logs/status",
                         timeout=settings.request_timeout_seconds)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        print(f"Backend not responding: {e}", file=sys.stderr)
        return 1
    print(json.dumps(resp.json(), indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(prog="logrelay", description="Log relay server and client")
    sub = p.add_subparsers(dest="cmd", required=True)

    servep = sub.add_parser("serve", help="Run the relay server")
    servep.add_argument("--host", default=None)
    servep.add_argument("--port", type=int, default=None)
    servep.set_defaults(func=_serve)

    logsp = sub.add_parser("logs", help="Query logs the way the consumer tool does")
    logsp.add_argument("--app", default=None, help="Tenant (defaults to LOGRELAY_DEFAULT_APP)")
    logsp.add_argument("--origin", default=None)
    logsp.add_argument("--topic", default=None)
    logsp.add_argument("--lines", type=int, default=20)
    logsp.add_argument("--filter", default="")
    logsp.add_argument("--backend", default=None, help="Relay URL, e.g. http://localhost:22345")
    logsp.set_defaults(func=_logs)

    statusp = sub.add_parser("status", help="Print tenants, origins and topics")
    statusp.add_argument("--backend", default=None)
    statusp.set_defaults(func=_status)

    args = p.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
