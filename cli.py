from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import requests
import yaml

ENDPOINTS = {"Deployment": "/deployments", "Service": "/services"}
COLLECTIONS = {"deployments": "/deployments", "services": "/services", "pods": "/pods", "routes": "/routes"}
OBJECTS = {"deployment": "/deployments", "service": "/services", "pod": "/pods"}


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def load_documents(path: Path) -> list[dict[str, Any]]:
    """Read descriptors from a JSON file or a (multi-document) YAML file."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text)
        docs = data if isinstance(data, list) else [data]
    else:
        docs = [d for d in yaml.safe_load_all(text) if d is not None]
    for d in docs:
        if not isinstance(d, dict):
            raise ValueError(f"{path}: every document must be a mapping")
        if d.get("kind") not in ENDPOINTS:
            raise ValueError(f"{path}: kind must be one of {sorted(ENDPOINTS)}, got {d.get('kind')!r}")
    return docs


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="hellokube CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_apply = sub.add_parser("apply", help="Apply Deployment/Service descriptors")
    s_apply.add_argument("-f", "--filename", action="append", required=True, type=Path)

    s_get = sub.add_parser("get", help="List objects")
    s_get.add_argument("what", choices=sorted(COLLECTIONS))
    s_get.add_argument("--deployment", help="Only pods of this deployment")

    s_del = sub.add_parser("delete", help="Delete an object")
    s_del.add_argument("what", choices=sorted(OBJECTS))
    s_del.add_argument("name")

    s_scale = sub.add_parser("scale", help="Change a deployment's replica count")
    s_scale.add_argument("name")
    s_scale.add_argument("--replicas", type=int, required=True)

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--deployment")

    sub.add_parser("reconcile", help="Run one reconcile pass now")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "apply":
        ok = True
        for path in args.filename:
            try:
                docs = load_documents(path)
            except (OSError, ValueError, yaml.YAMLError) as e:
                print(f"error: {e}", file=sys.stderr)
                return 1
            for doc in docs:
                r = requests.post(f"{base}{ENDPOINTS[doc['kind']]}", json=doc, timeout=30)
                _print(r.json())
                ok = ok and r.ok
        return 0 if ok else 1

    if args.cmd == "get":
        params = {"deployment": args.deployment} if args.what == "pods" and args.deployment else None
        r = requests.get(f"{base}{COLLECTIONS[args.what]}", params=params, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "delete":
        r = requests.delete(f"{base}{OBJECTS[args.what]}/{args.name}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "scale":
        r = requests.post(f"{base}/deployments/{args.name}/scale", json={"replicas": args.replicas}, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params: dict[str, Any] = {"limit": args.limit}
        if args.deployment:
            params["deployment"] = args.deployment
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "reconcile":
        r = requests.post(f"{base}/reconcile", timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
