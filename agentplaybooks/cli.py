"""
Command-line interface for the AgentPlaybooks API.

Usage:
    python -m agentplaybooks.cli serve                       Start the API server
    python -m agentplaybooks.cli init-db                     Create database tables
    python -m agentplaybooks.cli create-user EMAIL [--name]  Create a user and print a session token
"""

import argparse
import asyncio
import logging
import sys

from agentplaybooks.config import load_config, setup_logging

logger = logging.getLogger(__name__)


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the web server."""
    import uvicorn

    async def setup_and_run():
        from sqlalchemy.ext.asyncio import create_async_engine

        from agentplaybooks.persistence.postgres import PostgresRepository
        from agentplaybooks.web.app import create_app

        cfg = args.app_config
        engine = create_async_engine(
            cfg.database.url,
            pool_size=cfg.database.pool_max_size,
        )

        app = create_app(engine=engine, cors_origins=cfg.server.cors_origins)
        app.state.repo = PostgresRepository(engine)
        app.state.auth_config = cfg.auth
        app.state.server_config = cfg.server

        host = args.host or cfg.server.host
        port = args.port or cfg.server.port
        print(f"API docs: http://{host}:{port}/docs")
        print()

        config = uvicorn.Config(app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        await server.serve()

        await engine.dispose()

    try:
        asyncio.run(setup_and_run())
    except KeyboardInterrupt:
        print("\nServer stopped.")

    return 0


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create all tables directly from metadata (development shortcut for alembic)."""

    async def create_tables():
        from sqlalchemy.ext.asyncio import create_async_engine

        from agentplaybooks.persistence.tables import metadata

        engine = create_async_engine(args.app_config.database.url)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        finally:
            await engine.dispose()

    asyncio.run(create_tables())
    logger.info("Database tables created")
    print("Database tables created.")
    return 0


def cmd_create_user(args: argparse.Namespace) -> int:
    """Create (or find) a user and print a session token for API calls."""
    from agentplaybooks.web.auth import create_jwt

    cfg = args.app_config
    if not cfg.auth.enabled:
        print("Error: AUTH_SESSION_SECRET is not set; session tokens cannot be issued.")
        return 1

    async def upsert():
        from sqlalchemy.ext.asyncio import create_async_engine

        from agentplaybooks.persistence.postgres import PostgresRepository

        engine = create_async_engine(cfg.database.url)
        try:
            repo = PostgresRepository(engine)
            user = await repo.upsert_user(args.email)
            if args.name:
                user = await repo.update_user_display_name(user.id, args.name)
            return user
        finally:
            await engine.dispose()

    user = asyncio.run(upsert())
    token = create_jwt(user.id, cfg.auth.session_secret, cfg.auth.jwt_expiry_days)

    print(f"User: {user.email} ({user.id})")
    print(f"Session token (valid {cfg.auth.jwt_expiry_days} days):")
    print(token)
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="AgentPlaybooks - playbooks, memory and canvas for AI agents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=None,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--log-level",
        "-l",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level override",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Bind host (default: from config)",
    )
    serve_parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=None,
        help="Bind port (default: from config)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # init-db command
    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    # create-user command
    user_parser = subparsers.add_parser(
        "create-user", help="Create a user and print a session token"
    )
    user_parser.add_argument("email", type=str, help="User email address")
    user_parser.add_argument(
        "--name",
        "-n",
        type=str,
        default=None,
        help="Display name (3-30 chars: letters, digits, - or _)",
    )
    user_parser.set_defaults(func=cmd_create_user)

    args = parser.parse_args()

    # Load config and set up logging
    config = load_config(args.config)
    if args.log_level:
        config.logging.level = args.log_level
    setup_logging(config.logging)

    if args.command is None:
        parser.print_help()
        return 1

    args.app_config = config
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
