from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _auth(args) -> tuple[str, str] | None:
    if args.password:
        return (args.user, args.password)
    return None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Media Stack Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8787", help="API base URL")
    p.add_argument("--user", default="admin", help="Basic auth user for mutating calls")
    p.add_argument("--password", default=None, help="Basic auth password (omit if auth is disabled)")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_svc = sub.add_parser("services", help="List services with status, mappings and versions")
    s_svc.add_argument("--category", default=None)

    sub.add_parser("stats", help="Fleet statistics")

    s_ver = sub.add_parser("versions", help="Show upgrade status")
    s_ver.add_argument("--check", action="store_true", help="Run a version check now")

    s_ctl = sub.add_parser("control", help="Start/stop/restart a container")
    s_ctl.add_argument("service")
    s_ctl.add_argument("action", choices=["start", "stop", "restart"])

    s_logs = sub.add_parser("logs", help="Tail container logs")
    s_logs.add_argument("service")
    s_logs.add_argument("--tail", type=int, default=100)

    s_up = sub.add_parser("upgrade", help="Upgrade a single service")
    s_up.add_argument("service")
    s_up.add_argument("--action", default="pull_image", choices=["pull_image", "rebuild_container", "restart_service"])

    sub.add_parser("global-upgrade", help="Upgrade the platform and every service")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--service", default=None)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    base = args.api.rstrip("/")
    auth = _auth(args)

    if args.cmd == "services":
        params = {"category": args.category} if args.category else None
        r = requests.get(f"{base}/api/services", params=params, auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "stats":
        r = requests.get(f"{base}/api/stats", auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "versions":
        if args.check:
            r = requests.post(f"{base}/api/services/versions/check", auth=auth, timeout=30)
        else:
            r = requests.get(f"{base}/api/services/versions", auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "control":
        r = requests.post(f"{base}/api/service/{args.service}/{args.action}", auth=auth, timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "logs":
        r = requests.get(f"{base}/api/service/{args.service}/logs", params={"tail": args.tail}, auth=auth, timeout=30)
        if r.ok:
            print(r.json()["logs"], end="")
            return 0
        _print(r.json())
        return 1

    if args.cmd == "upgrade":
        payload = {"service": args.service, "action": args.action}
        r = requests.post(f"{base}/api/services/upgrade", json=payload, auth=auth, timeout=600)
        body = r.json()
        _print(body)
        return 0 if r.ok and body.get("success") else 1

    if args.cmd == "global-upgrade":
        r = requests.post(f"{base}/api/platform/upgrade", json={"action": "full_upgrade"}, auth=auth, timeout=1800)
        body = r.json()
        _print(body)
        return 0 if r.ok and body.get("success") else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.service:
            params["service"] = args.service
        _print(requests.get(f"{base}/events", params=params, auth=auth, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
