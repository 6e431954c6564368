"""Toolshed CLI entry point."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path


# ── Default templates for `toolshed init` ────────────────────────────────────

_DEFAULT_CONFIG = """\
# toolshed.yaml — Toolshed control plane configuration
# Secrets are never written here, only the names of the env vars holding them.

server:
  base_url: "{base_url}"
  data_dir: .toolshed-data
  catalog_file: catalog.yaml

provisioning:
  api_token_env: DIGITALOCEAN_TOKEN
  region: nyc3
  size: s-1vcpu-1gb
  image: ubuntu-22-04-x64
  host_agent_image: ghcr.io/toolshed/hostagent:latest

host_agent:
  port: 30000
  system_key_env: TOOLSHED_SYSTEM_KEY

heartbeat:
  interval: 30
  timeout: 120

secret_store:
  key_env: TOOLSHED_SECRET_KEY

auth:
  tokens:
    # toolshed gen-token --user-id <id> prints an entry to paste here
    []
"""

_DEFAULT_CATALOG = """\
# catalog.yaml — tool templates seeded into the catalog at startup (upserted by name)

tools:
  - name: echo-tool
    display_name: Echo
    description: Echoes its payload back; useful for smoke tests.
    image: ghcr.io/toolshed/echo-tool:latest
    entrypoint: ["/tool/run"]
    secret_slots:
      - name: API key
        kind: api_key
        env_var: ECHO_API_KEY
        description: Any non-empty string
    capabilities:
      - name: echo.send
        label: Send a message
"""


def _init_project(root: Path, base_url: str) -> None:
    """Write a starter toolshed.yaml and catalog.yaml."""
    targets = [(root / "toolshed.yaml", _DEFAULT_CONFIG.format(base_url=base_url)),
               (root / "catalog.yaml", _DEFAULT_CATALOG)]
    existing = [p for p, _ in targets if p.exists()]
    if existing:
        print(f"Error: {existing[0]} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    for path, content in targets:
        path.write_text(content)

    print(f"Initialized Toolshed config in {root}")
    print()
    print("Next steps:")
    print("  1. toolshed gen-secret-key   → export TOOLSHED_SECRET_KEY=...")
    print("  2. toolshed gen-token --user-id <you> --admin   → paste into auth.tokens")
    print("  3. Set DIGITALOCEAN_TOKEN and TOOLSHED_SYSTEM_KEY")
    print(f"  4. Run: toolshed serve --config {root / 'toolshed.yaml'}")


def _gen_token(args) -> None:
    from toolshed.security import generate_token, token_hash

    token = generate_token()
    print(f"Token (give to the user, shown once): {token}")
    print()
    print("Config entry:")
    print(f"  - token_sha256: {token_hash(token)}")
    print(f"    user_id: {args.user_id}")
    if args.admin:
        print("    admin: true")


def _gen_secret_key() -> None:
    from toolshed.secret_store import generate_key

    print(generate_key())


def _add_server_args(p: argparse.ArgumentParser, default_port: int) -> None:
    p.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    p.add_argument(
        "--port",
        type=int,
        default=default_port,
        help=f"Port to bind to (default: {default_port})",
    )
    p.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )


def main():
    parser = argparse.ArgumentParser(
        prog="toolshed",
        description="Toolshed — multi-tenant tool execution with per-agent credential brokering",
    )

    subparsers = parser.add_subparsers(dest="command")

    # toolshed init
    init_parser = subparsers.add_parser("init", help="Write a starter toolshed.yaml and catalog.yaml")
    init_parser.add_argument(
        "--root",
        type=Path,
        default=Path.cwd(),
        help="Directory to write into (default: current directory)",
    )
    init_parser.add_argument(
        "--base-url",
        default="http://localhost:8000",
        help="URL host agents use to reach this control plane",
    )

    # toolshed serve
    serve_parser = subparsers.add_parser("serve", help="Start the control plane API server")
    serve_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to toolshed.yaml (default: $TOOLSHED_CONFIG or ./toolshed.yaml)",
    )
    _add_server_args(serve_parser, 8000)

    # toolshed hostagent
    agent_parser = subparsers.add_parser(
        "hostagent", help="Start the host agent (runs on each Toolbox; configured from env)"
    )
    _add_server_args(agent_parser, 30000)

    # toolshed gen-token
    token_parser = subparsers.add_parser("gen-token", help="Generate a user API token")
    token_parser.add_argument("--user-id", required=True, help="User the token acts for")
    token_parser.add_argument("--admin", action="store_true", help="Grant catalog admin rights")

    # toolshed gen-secret-key
    subparsers.add_parser("gen-secret-key", help="Generate a secret store encryption key")

    args = parser.parse_args()

    if args.command == "init":
        _init_project(args.root, args.base_url)
        return

    if args.command == "gen-token":
        _gen_token(args)
        return

    if args.command == "gen-secret-key":
        _gen_secret_key()
        return

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    import uvicorn

    if args.command == "hostagent":
        from toolshed.hostagent.app import create_app as create_agent_app

        app = create_agent_app()
    else:
        if args.config is not None and not args.config.exists():
            print(f"Error: config file not found at {args.config}", file=sys.stderr)
            sys.exit(1)

        from toolshed.server import create_app

        app = create_app(config_path=args.config)

    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
