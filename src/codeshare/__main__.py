"""CodeShare CLI — unified entry point.

Usage:
    python -m codeshare server            # Start dashboard (FastAPI on port 8888)
    python -m codeshare server --dry-run  # Dashboard on an in-memory backend with demo data
    python -m codeshare code SECRET       # Print the current code for a secret
    python -m codeshare secret new        # Generate a TOTP secret
    python -m codeshare key new           # Generate a CODESHARE_MASTER_KEY
    python -m codeshare models add        # Enroll a model (secret sealed at rest)
    python -m codeshare publish MODEL_ID  # Run the code publisher for one model
    python -m codeshare db init           # Apply schema.sql
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from uuid import UUID

from codeshare.config import settings
from codeshare.errors import InvalidSecretError


def _setup_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )


def cmd_server(args: argparse.Namespace) -> None:
    """Start the dashboard server."""
    import uvicorn

    _setup_logging()
    if args.dry_run:
        from codeshare.backend import MemoryBackend
        from codeshare.dashboard.app import create_app

        backend = MemoryBackend()
        app = create_app(backend, start_publishers=True)
        url = asyncio.run(_seed_demo(backend, args.host, args.port))
        print(f"Dry run: demo share link {url}")
    else:
        from codeshare.dashboard.app import app

    print(f"Starting CodeShare Dashboard on http://{args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())


async def _seed_demo(backend, host: str, port: int) -> str:
    from codeshare.auth.totp import generate_secret
    from codeshare.models import ShareLinkCreate

    group = backend.add_group("Demo group", "In-memory demo data")
    backend.add_model(group.id, "demo-account", generate_secret())
    link = await backend.create_share_link(group.id, ShareLinkCreate())
    shown_host = "localhost" if host in ("0.0.0.0", "::") else host
    return f"http://{shown_host}:{port}/shared/{group.id}?token={link.access_token}"


def cmd_code(args: argparse.Namespace) -> None:
    """Print the current code and seconds left in its window."""
    from codeshare.auth.totp import generate_code, time_remaining

    try:
        code = generate_code(args.secret)
    except InvalidSecretError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"{code}  (refreshes in {time_remaining()}s)")


def cmd_secret(args: argparse.Namespace) -> None:
    from codeshare.auth.totp import generate_secret, get_provisioning_uri

    secret = generate_secret()
    print(secret)
    if args.username:
        print(get_provisioning_uri(secret, args.username))


def cmd_key(args: argparse.Namespace) -> None:
    from codeshare.crypto import generate_master_key

    print(generate_master_key())


def cmd_models(args: argparse.Namespace) -> None:
    """Enroll a model."""
    from codeshare.auth.totp import normalize_secret
    from codeshare.db import close_pool, init_pool
    from codeshare.repository import PostgresBackend

    try:
        secret = normalize_secret(args.secret)
    except InvalidSecretError as e:
        print(f"Error: {e}")
        sys.exit(1)

    async def _add():
        await init_pool(min_size=1, max_size=1)
        try:
            return await PostgresBackend().add_model(args.group, args.name, secret)
        finally:
            await close_pool()

    model = asyncio.run(_add())
    print(f"Enrolled model {model.name}: {model.id}")


def cmd_publish(args: argparse.Namespace) -> None:
    """Run one model's publisher until interrupted."""
    from codeshare.db import close_pool, init_pool
    from codeshare.publisher import PublisherRegistry
    from codeshare.repository import PostgresBackend

    _setup_logging()

    async def _run():
        await init_pool(min_size=1, max_size=2)
        registry = PublisherRegistry(PostgresBackend())
        try:
            publisher = await registry.start(args.model_id)
            last = None
            while publisher.is_active:
                state = publisher.state
                if (state.code, state.stale) != last:
                    last = (state.code, state.stale)
                    flag = " (stale)" if state.stale else ""
                    print(f"{state.code}{flag}  refreshes in {state.time_remaining}s")
                await asyncio.sleep(1)
        finally:
            registry.stop_all()
            await close_pool()

    try:
        asyncio.run(_run())
    except LookupError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nPublisher stopped.")


def cmd_db(args: argparse.Namespace) -> None:
    from codeshare.db import apply_schema

    try:
        apply_schema()
    except Exception as e:
        print(f"Cannot apply schema: {e}")
        sys.exit(1)
    print("Schema applied.")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="codeshare",
        description="CodeShare — shared 2FA codes with live share links",
    )
    sub = parser.add_subparsers(dest="command", help="Command to run")

    # server
    p_server = sub.add_parser("server", help="Start dashboard (FastAPI)")
    p_server.add_argument("--port", type=int, default=settings.dashboard_port)
    p_server.add_argument("--host", default=settings.dashboard_host)
    p_server.add_argument("--dry-run", action="store_true", help="Use an in-memory backend with demo data")

    # code
    p_code = sub.add_parser("code", help="Print the current code for a secret")
    p_code.add_argument("secret")

    # secret
    p_secret = sub.add_parser("secret", help="TOTP secrets")
    p_secret.add_argument("action", choices=["new"])
    p_secret.add_argument("--username", help="Also print an otpauth:// URI for this account name")

    # key
    p_key = sub.add_parser("key", help="Master key for sealing secrets")
    p_key.add_argument("action", choices=["new"])

    # models
    p_models = sub.add_parser("models", help="Manage models")
    p_models.add_argument("action", choices=["add"])
    p_models.add_argument("--group", type=UUID, help="Group ID")
    p_models.add_argument("--name", required=True)
    p_models.add_argument("--secret", required=True)

    # publish
    p_pub = sub.add_parser("publish", help="Run the code publisher for a model")
    p_pub.add_argument("model_id", type=UUID)

    # db
    p_db = sub.add_parser("db", help="Database schema")
    p_db.add_argument("action", choices=["init"])

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    dispatch = {
        "server": cmd_server,
        "code": cmd_code,
        "secret": cmd_secret,
        "key": cmd_key,
        "models": cmd_models,
        "publish": cmd_publish,
        "db": cmd_db,
    }
    dispatch[args.command](args)


if __name__ == "__main__":
    main()
