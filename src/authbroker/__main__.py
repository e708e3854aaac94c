"""authbroker command-line interface. Use --help for usage."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from authbroker.config import AuthBrokerConfig, load_config
from authbroker.errors.exceptions import AuthBrokerError
from authbroker.logging import setup_logging
from authbroker.oauth2.service import AuthenticationService
from authbroker.types import FlowKind

logger = logging.getLogger(__name__)


def _format_session(session) -> str:
    if session.expires:
        expires = session.expires_at.astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
    else:
        expires = "never"
    scopes = " ".join(session.scopes) or "(none)"
    return f"{session.id}  {session.provider_id:<12} {session.account:<24} expires {expires}  scopes: {scopes}"


async def cmd_login(args: argparse.Namespace, config: AuthBrokerConfig) -> int:
    """Execute login command."""
    flow = None
    if args.device_code:
        flow = FlowKind.DEVICE_CODE
    elif args.browser:
        flow = FlowKind.LOOPBACK

    async with AuthenticationService.from_config(config) as service:
        session = await service.acquire_session(
            args.provider,
            scopes=args.scopes,
            account=args.account,
            flow=flow,
        )
        print(f"Signed in to {session.provider_id} as {session.account}")
        print(_format_session(session))
    return 0


async def cmd_list(args: argparse.Namespace, config: AuthBrokerConfig) -> int:
    """Execute list command."""
    async with AuthenticationService.from_config(config) as service:
        sessions = await service.get_sessions(args.provider)

    if not sessions:
        print("No sessions.")
        return 0
    for session in sessions:
        print(_format_session(session))
    return 0


async def cmd_logout(args: argparse.Namespace, config: AuthBrokerConfig) -> int:
    """Execute logout command."""
    async with AuthenticationService.from_config(config) as service:
        removed = await service.remove_session(args.session_id)

    if not removed:
        print(f"No session {args.session_id}")
        return 1
    print(f"Signed out session {args.session_id}")
    return 0


async def cmd_providers(args: argparse.Namespace, config: AuthBrokerConfig) -> int:
    """Execute providers command."""
    if not config.providers:
        print("No providers configured.")
        return 0
    for provider in config.providers:
        flows = ", ".join(f.value for f in provider.supported_flows)
        print(f"{provider.id:<12} {provider.label:<20} flows: {flows}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authbroker",
        description="Sign in to account providers and manage cached sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Sign in to GitHub, device code when no browser is available
    python -m authbroker login github --scopes repo read:org

    # Force the device-code flow
    python -m authbroker login microsoft --device-code

    # List cached sessions
    python -m authbroker list github

    # Sign out
    python -m authbroker logout 3f2c9a...
        """,
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to authbroker.yaml (default: config/authbroker.yaml)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    parser_login = subparsers.add_parser("login", help="Sign in to a provider")
    parser_login.add_argument("provider", help="Provider id")
    parser_login.add_argument("--scopes", nargs="*", default=None, help="Scopes to request")
    parser_login.add_argument("--account", help="Account to sign in as")
    flow_group = parser_login.add_mutually_exclusive_group()
    flow_group.add_argument("--device-code", action="store_true", help="Use the device-code flow")
    flow_group.add_argument("--browser", action="store_true", help="Use the browser (loopback) flow")
    parser_login.set_defaults(func=cmd_login)

    parser_list = subparsers.add_parser("list", help="List cached sessions")
    parser_list.add_argument("provider", nargs="?", help="Only sessions of this provider")
    parser_list.set_defaults(func=cmd_list)

    parser_logout = subparsers.add_parser("logout", help="Sign out a session")
    parser_logout.add_argument("session_id", help="Session id from 'list'")
    parser_logout.set_defaults(func=cmd_logout)

    parser_providers = subparsers.add_parser("providers", help="List configured providers")
    parser_providers.set_defaults(func=cmd_providers)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_config(config_path=args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(
        level="DEBUG" if args.verbose else config.log_level,
        json_format=config.log_json,
    )

    try:
        return asyncio.run(args.func(args, config))
    except KeyboardInterrupt:
        print("\n\nOperation cancelled by user.")
        return 130
    except AuthBrokerError as e:
        logger.error("Error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
