from __future__ import annotations

import argparse
import json
import os
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
    p = argparse.ArgumentParser(description="avalauncher CLI")
    p.add_argument("--api", default=os.getenv("AVL_API", "http://localhost:8080"), help="API base URL")
    p.add_argument("--key", default=os.getenv("AVL_ADMIN_KEY"), help="Admin bearer key (default: $AVL_ADMIN_KEY)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("status", help="Show counts (and nodes when authenticated)")
    sub.add_parser("nodes", help="List nodes")
    sub.add_parser("hosts", help="List hosts")

    s_host = sub.add_parser("add-host", help="Register a Docker host")
    s_host.add_argument("--name", required=True)
    s_host.add_argument("--address", required=True, help="e.g. tcp://10.0.0.5:2375")
    s_host.add_argument("--capacity", type=int, default=0)

    s_create = sub.add_parser("create", help="Create a node (does not start it)")
    s_create.add_argument("--name", required=True)
    s_create.add_argument("--image", required=True)
    s_create.add_argument("--staking-port", type=int, default=9651)
    s_create.add_argument("--http-port", type=int, default=9650)
    s_create.add_argument("--host-id", type=int)

    for name, help_text in (("get", "Show a node"), ("start", "Start a node"), ("stop", "Stop a node")):
        s = sub.add_parser(name, help=help_text)
        s.add_argument("id", type=int)

    s_del = sub.add_parser("delete", help="Delete a node")
    s_del.add_argument("id", type=int)
    s_del.add_argument("--remove-volumes", action="store_true")

    s_logs = sub.add_parser("logs", help="Print node logs")
    s_logs.add_argument("id", type=int)
    s_logs.add_argument("--tail", default="100")
    s_logs.add_argument("-f", "--follow", action="store_true")

    s_bind = sub.add_parser("bind", help="Bind a node to an L1")
    s_bind.add_argument("id", type=int)
    s_bind.add_argument("--subnet-id", required=True)

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    headers = {"Authorization": f"Bearer {args.key}"} if args.key else {}

    if args.cmd == "status":
        return _done(requests.get(f"{base}/api/status", headers=headers, timeout=10))

    if args.cmd == "nodes":
        return _done(requests.get(f"{base}/api/nodes", headers=headers, timeout=10))

    if args.cmd == "hosts":
        return _done(requests.get(f"{base}/api/hosts", headers=headers, timeout=10))

    if args.cmd == "add-host":
        payload = {"name": args.name, "address": args.address, "capacity": args.capacity}
        return _done(requests.post(f"{base}/api/hosts", json=payload, headers=headers, timeout=10))

    if args.cmd == "create":
        payload = {
            "name": args.name,
            "image": args.image,
            "staking_port": args.staking_port,
            "http_port": args.http_port,
        }
        if args.host_id is not None:
            payload["host_id"] = args.host_id
        return _done(requests.post(f"{base}/api/nodes", json=payload, headers=headers, timeout=10))

    if args.cmd == "get":
        return _done(requests.get(f"{base}/api/nodes/{args.id}", headers=headers, timeout=10))

    if args.cmd in {"start", "stop"}:
        # Start/stop wait on the container runtime; allow for image pulls.
        return _done(requests.post(f"{base}/api/nodes/{args.id}/{args.cmd}", headers=headers, timeout=600))

    if args.cmd == "delete":
        params = {"remove_volumes": "true" if args.remove_volumes else "false"}
        return _done(requests.delete(f"{base}/api/nodes/{args.id}", params=params, headers=headers, timeout=600))

    if args.cmd == "logs":
        params = {"tail": args.tail, "follow": "true" if args.follow else "false"}
        with requests.get(
            f"{base}/api/nodes/{args.id}/logs", params=params, headers=headers, stream=True, timeout=(10, None)
        ) as r:
            if not r.ok:
                return _done(r)
            try:
                for chunk in r.iter_content(chunk_size=None):
                    sys.stdout.buffer.write(chunk)
                    sys.stdout.buffer.flush()
            except KeyboardInterrupt:
                pass
        return 0

    if args.cmd == "bind":
        payload = {"subnet_id": args.subnet_id}
        return _done(requests.post(f"{base}/api/nodes/{args.id}/l1s", json=payload, headers=headers, timeout=10))

    if args.cmd == "events":
        return _done(requests.get(f"{base}/api/events", params={"limit": args.limit}, headers=headers, timeout=10))

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
