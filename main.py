"""Command-line interface for the finance admin console."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from getpass import getpass
from typing import List, Optional, Sequence

from finadmin.auth_service import AuthService, NewUser
from finadmin.backend import BackendClient
from finadmin.config import Settings, load_settings

logger = logging.getLogger("finadmin.main")

PASSWORD_MIN_LENGTH = 8
PASSWORD_ATTEMPTS = 3
COMMANDS = ("serve", "create-admin", "list-users")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Finance admin console utilities")
    parser.set_defaults(command="serve")
    commands = parser.add_subparsers(dest="command")

    serve = commands.add_parser("serve", help="Run the admin console web server")
    serve.add_argument("--host", default="127.0.0.1", help="Interface to listen on")
    serve.add_argument("--port", type=int, default=8000, help="TCP port (default: 8000)")
    serve.add_argument("--ssl-certfile", help="PEM certificate chain; enables HTTPS with --ssl-keyfile")
    serve.add_argument("--ssl-keyfile", help="PEM private key matching --ssl-certfile")

    create_admin = commands.add_parser("create-admin", help="Create a verified administrator account")
    create_admin.add_argument("name", help="Full name shown in the console")
    create_admin.add_argument("email", help="Sign-in email address")
    create_admin.add_argument("--phone", default="", help="Phone number stored on the profile")
    create_admin.add_argument(
        "--balance",
        type=float,
        default=0.0,
        help="Opening balance (default: 0)",
    )

    commands.add_parser("list-users", help="Print every profile known to the backend")
    return parser


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    args: List[str] = list(sys.argv[1:] if argv is None else argv)
    wants_help = any(flag in args for flag in ("-h", "--help"))
    # Bare options such as ``--port 8080`` belong to the implicit ``serve`` command.
    if not args or (args[0] not in COMMANDS and not wants_help):
        args.insert(0, "serve")
    return _build_parser().parse_args(args)


def _build_client(settings: Settings) -> BackendClient:
    client = BackendClient(
        settings.backend.url,
        settings.backend.anon_key,
        service_key=settings.backend.service_key,
        timeout=settings.backend.timeout,
    )
    # Without a browser session the CLI can only write profiles with the service key.
    return client.as_service() if client.has_service_key else client


def _serve(settings: Settings, args: argparse.Namespace) -> int:
    import uvicorn

    from finadmin.console import create_app

    tls_files = (args.ssl_certfile, args.ssl_keyfile)
    if any(tls_files) and not all(tls_files):
        print("Error: --ssl-certfile and --ssl-keyfile must be given together.", file=sys.stderr)
        return 2

    scheme = "https" if all(tls_files) else "http"
    logger.info("Admin console listening on %s://%s:%s", scheme, args.host, args.port)
    uvicorn.run(
        create_app(settings=settings),
        host=args.host,
        port=args.port,
        log_level="info",
        ssl_certfile=args.ssl_certfile,
        ssl_keyfile=args.ssl_keyfile,
    )
    return 0


def _prompt_for_password() -> Optional[str]:
    attempts = PASSWORD_ATTEMPTS
    while attempts:
        attempts -= 1
        password = getpass(f"Administrator password ({PASSWORD_MIN_LENGTH}+ characters): ")
        if len(password) < PASSWORD_MIN_LENGTH:
            print(f"The password needs at least {PASSWORD_MIN_LENGTH} characters.")
        elif getpass("Repeat password: ") != password:
            print("The two passwords differ.")
        else:
            return password
    return None


def _create_admin(settings: Settings, args: argparse.Namespace) -> int:
    password = _prompt_for_password()
    if password is None:
        print("Aborted creating administrator.", file=sys.stderr)
        return 1

    try:
        new_user = NewUser(
            full_name=args.name,
            email=args.email,
            phone_number=args.phone,
            password=password,
            balance=args.balance,
            is_admin=True,
            is_verified=True,
        )
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    gateway = AuthService(_build_client(settings), default_balance=settings.default_balance)
    user = asyncio.run(gateway.admin_create_user(new_user))
    if user is None:
        print("Failed to create administrator. The email might be taken.", file=sys.stderr)
        return 1

    print(f"Created administrator {user.id}: {user.full_name} <{user.email}>")
    return 0


def _list_users(settings: Settings) -> int:
    gateway = AuthService(_build_client(settings))
    users = asyncio.run(gateway.get_all_users())
    if not users:
        print("No users are currently registered.")
        return 0

    print(f"{len(users)} user(s) found:")
    print(f"{'Name':<24}  {'Email':<32}  {'Balance':>16}  Flags")
    print("-" * 86)
    for user in users:
        flags = ",".join(
            flag for flag, enabled in (("admin", user.is_admin), ("verified", user.is_verified)) if enabled
        )
        print(f"{user.full_name:<24}  {user.email:<32}  {user.balance:>16,.2f}  {flags or '-'}")
    return 0


HANDLERS = {
    "serve": _serve,
    "create-admin": _create_admin,
    "list-users": lambda settings, args: _list_users(settings),
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run one CLI command and return its exit status."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    try:
        settings = load_settings()
    except RuntimeError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    return HANDLERS[args.command](settings, args)


if __name__ == "__main__":
    raise SystemExit(main())
