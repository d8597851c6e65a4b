"""Command line entry point: ``raas serve | check | status``."""
#
# PURPOSE:
# - serve: load .env, configure logging, load the vault once, register the
#   rollup from the environment, then serve the HTTP status surface while the
#   bring-up deploy runs in the background.
# - check: probe host tooling (docker, docker compose, npm, yarn).
# - status: print an instance snapshot from a running server.
#

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import List, Optional

import httpx
from dotenv import load_dotenv

from raas.base.config import RollupConfig, get_config, setup_logging
from raas.engine.backend import ComposeBackend, check_prerequisites
from raas.errors import RaasError


def run_serve(args) -> int:
    from raas.server.api import serve
    from raas.service import RaasService
    from raas.vault.credentials import Vault

    config = get_config()
    setup_logging(config)
    try:
        vault = Vault.from_env()
        vault.require()
        rollup = RollupConfig.from_env()
    except RaasError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2

    service = RaasService(config, vault, rollup=rollup)
    print(f"🚀 Orbit RaaS serving {rollup.instance_id} on {args.host or config.server.api_host}:{args.port or config.server.api_port}")
    serve(service, host=args.host, port=args.port, bring_up=not args.no_deploy)
    return 0


def run_check(args) -> int:
    config = get_config()
    setup_logging(config)
    results = asyncio.run(check_prerequisites(ComposeBackend(config.driver)))
    for name, available in results.items():
        print(f"{'✅' if available else '❌'} {name}")
    return 0 if all(results.values()) else 1


def run_status(args) -> int:
    path = f"/v1/instances/{args.instance}/status" if args.instance else "/status"
    try:
        response = httpx.get(args.url.rstrip("/") + path, timeout=10.0)
    except httpx.HTTPError as e:
        print(f"❌ Could not reach {args.url}: {e}", file=sys.stderr)
        return 1
    print(json.dumps(response.json(), indent=2))
    return 0 if response.is_success else 1


def main(argv: Optional[List[str]] = None) -> int:
    # Operator settings may live in a .env beside the working directory
    load_dotenv()

    parser = argparse.ArgumentParser(prog="raas", description="Orbit RaaS control plane")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Serve the status API and deploy the configured rollup")
    serve_parser.add_argument("--host", help="Bind address (default RAAS_API_HOST)")
    serve_parser.add_argument("--port", type=int, help="Port (default RAAS_API_PORT)")
    serve_parser.add_argument("--no-deploy", action="store_true", help="Skip the bring-up deploy")
    serve_parser.set_defaults(func=run_serve)

    check_parser = subparsers.add_parser("check", help="Check docker, docker compose, npm and yarn")
    check_parser.set_defaults(func=run_check)

    status_parser = subparsers.add_parser("status", help="Print instance status from a running server")
    status_parser.add_argument("--url", default="http://127.0.0.1:3000", help="Server base URL")
    status_parser.add_argument("--instance", help="Instance id (default: the bring-up rollup)")
    status_parser.set_defaults(func=run_status)

    args = parser.parse_args(argv)

    if hasattr(args, "func"):
        return args.func(args)
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
