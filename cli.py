from __future__ import annotations

import argparse
import json
import sys

import requests

from asr.config import ConfigError, load_config


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Autoscaling Service Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("status", help="Show desired count, instance phases and last decision")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--instance", default=None)

    s_in = sub.add_parser("intents", help="Show scaling and lifecycle intents")
    s_in.add_argument("--limit", type=int, default=20)

    sub.add_parser("route", help="Pick the next Ready backend")

    s_chk = sub.add_parser("check-config", help="Validate a manifest without contacting the API")
    s_chk.add_argument("path")

    args = p.parse_args(argv)

    if args.cmd == "check-config":
        try:
            cfg = load_config(args.path)
        except ConfigError as e:
            print(f"invalid: {e}", file=sys.stderr)
            return 1
        _print(cfg.model_dump())
        return 0

    base = args.api.rstrip("/")

    if args.cmd == "status":
        r = requests.get(f"{base}/status", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.instance:
            params["instance"] = args.instance
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "intents":
        _print(requests.get(f"{base}/intents", params={"limit": args.limit}, timeout=10).json())
        return 0

    if args.cmd == "route":
        r = requests.get(f"{base}/route", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
