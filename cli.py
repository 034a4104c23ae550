from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _done(r: requests.Response) -> int:
    try:
        _print(r.json())
    except ValueError:
        print(r.text)
    return 0 if r.ok else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Fleet Orchestrator CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_svc = sub.add_parser("services", help="List services")
    s_svc.add_argument("--name", help="Only services with this name")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    s_reg = sub.add_parser("register", help="Register a service")
    s_reg.add_argument("--name", required=True)
    s_reg.add_argument("--version", default="1.0.0")
    s_reg.add_argument("--category", default="core", choices=["core", "feature", "utility", "integration"])
    s_reg.add_argument("--replicas", type=int)
    s_reg.add_argument("--min-instances", type=int, default=1)
    s_reg.add_argument("--max-instances", type=int, default=10)
    s_reg.add_argument("--health-path", default="/health")
    s_reg.add_argument("--strategy", choices=["rolling", "blue-green", "canary", "recreate"])

    s_dep = sub.add_parser("deploy", help="Queue a deployment")
    s_dep.add_argument("--service-id", required=True)
    s_dep.add_argument("--version", required=True)
    s_dep.add_argument("--strategy", choices=["rolling", "blue-green", "canary", "recreate"])
    s_dep.add_argument("--replicas", type=int)
    s_dep.add_argument("--canary-percent", type=float)

    s_rb = sub.add_parser("rollback", help="Roll back a deployment")
    s_rb.add_argument("--deployment-id", required=True)

    s_scale = sub.add_parser("scale", help="Set the instance count of a service")
    s_scale.add_argument("--service-id", required=True)
    s_scale.add_argument("--replicas", type=int, required=True)

    s_health = sub.add_parser("health", help="Show service health")
    s_health.add_argument("--service-id", required=True)

    s_res = sub.add_parser("resolve", help="Resolve a service name to endpoints")
    s_res.add_argument("--name", required=True)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "services":
        params = {"name": args.name} if args.name else None
        return _done(requests.get(f"{base}/services", params=params, timeout=10))

    if args.cmd == "events":
        return _done(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10))

    if args.cmd == "register":
        payload = {
            "name": args.name,
            "version": args.version,
            "category": args.category,
            "replicas": args.replicas,
            "health_path": args.health_path,
            "config": {"min_instances": args.min_instances, "max_instances": args.max_instances},
            "strategy": args.strategy,
        }
        return _done(requests.post(f"{base}/services", json=payload, timeout=60))

    if args.cmd == "deploy":
        payload = {
            "version": args.version,
            "strategy": args.strategy,
            "replicas": args.replicas,
            "canary_percent": args.canary_percent,
        }
        return _done(requests.post(f"{base}/services/{args.service_id}/deployments", json=payload, timeout=30))

    if args.cmd == "rollback":
        # Rollback runs synchronously on the server.
        return _done(requests.post(f"{base}/deployments/{args.deployment_id}/rollback", timeout=300))

    if args.cmd == "scale":
        payload = {"replicas": args.replicas}
        return _done(requests.post(f"{base}/services/{args.service_id}/scale", json=payload, timeout=60))

    if args.cmd == "health":
        return _done(requests.get(f"{base}/services/{args.service_id}/health", timeout=10))

    if args.cmd == "resolve":
        return _done(requests.get(f"{base}/resolve/{args.name}", timeout=10))

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
