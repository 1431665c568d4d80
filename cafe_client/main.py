"""
Main entry point for the Cafe POS client.

Provides a command-line interface for signing in, checking the session, and
looking up or watching the payment of an order.
"""

import sys
import argparse
import asyncio
import getpass
import json
import logging
from typing import Optional, Dict, Any

from cafe_client.app import CafeClient, create_client
from cafe_client.config import ClientConfiguration
from cafe_client.payments.events import decode_status
from cafe_shared.exceptions import APIClientError, AuthenticationError, CafeClientError
from cafe_shared.logging_config import LogFormat, LogLevel, setup_logging
from cafe_shared.models import PaymentResult

logger = logging.getLogger(__name__)


EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_AUTH_REQUIRED = 2
EXIT_PAYMENT_FAILED = 3
EXIT_TIMEOUT = 4
EXIT_INTERRUPTED = 130


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="cafe-pos-client",
        description="Cafe POS client",
        epilog="""
Examples:
  %(prog)s login --email cashier@cafe.local
  %(prog)s whoami --json
  %(prog)s check-payment ORD123
  %(prog)s watch-payment ORD123 --timeout 300
  %(prog)s logout

Exit codes:
  0   - Success
  1   - Operation failed
  2   - Authentication required
  3   - Payment failed
  4   - Timeout
  130 - Cancelled by user (Ctrl+C)
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Path to configuration file")
    config_group.add_argument("--server-url", type=str, metavar="URL",
                              help="Override server URL")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Output results in JSON format")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true",
                             help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE",
                             help="Also log to this file")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    login_parser = subparsers.add_parser("login", help="Sign in and store the session")
    login_parser.add_argument("--email", type=str, help="Account email (prompted if omitted)")

    subparsers.add_parser("logout", help="Sign out and forget the stored session")
    subparsers.add_parser("whoami", help="Show the signed in user")

    check_parser = subparsers.add_parser("check-payment", help="Look up the payment status of an order once")
    check_parser.add_argument("order_code", metavar="ORDER", help="Order reference")

    watch_parser = subparsers.add_parser("watch-payment", help="Wait for the payment outcome of an order")
    watch_parser.add_argument("order_code", metavar="ORDER", help="Order reference")
    watch_parser.add_argument("--timeout", type=float, metavar="SECONDS",
                              help="Give up after this many seconds (default: wait indefinitely)")

    args = parser.parse_args(argv)

    if getattr(args, 'timeout', None) is not None and args.timeout <= 0:
        parser.error("--timeout must be positive")

    return args


def configure_logging(args, config: ClientConfiguration) -> None:
    """Configure logging based on command line arguments and configuration."""
    if args.debug:
        log_level = LogLevel.DEBUG
    elif args.json:
        # Keep stdout parseable
        log_level = LogLevel.ERROR
    else:
        try:
            log_level = LogLevel(config.get_log_level())
        except ValueError:
            log_level = LogLevel.WARNING

    try:
        log_format = LogFormat(config.get_log_format())
    except ValueError:
        log_format = LogFormat.STANDARD
    if args.debug and log_format == LogFormat.STANDARD:
        log_format = LogFormat.DETAILED

    setup_logging(
        log_level=log_level,
        log_format=log_format,
        log_file=args.log_file or config.get_log_file(),
        max_file_size=int(config.get_config('logging.max_size', 10485760)),
        backup_count=int(config.get_config('logging.backup_count', 3))
    )

    if not args.debug:
        for noisy in ('socketio', 'engineio', 'aiohttp'):
            logging.getLogger(noisy).setLevel(logging.WARNING)


def output(args, data: Dict[str, Any], text: str, error: bool = False) -> None:
    if args.json:
        print(json.dumps(data, default=str))
    else:
        print(text, file=sys.stderr if error else sys.stdout)


def result_to_dict(result: PaymentResult) -> Dict[str, Any]:
    return {
        'order_code': result.order_code,
        'outcome': result.outcome.value,
        'message': result.message,
        'source': result.source.value,
        'observed_at': result.observed_at.isoformat()
    }


async def require_session(args, client: CafeClient) -> bool:
    if await client.token_manager.restore_session():
        return True
    output(args, {'authenticated': False}, "Not signed in. Run 'login' first.", error=True)
    return False


async def handle_login(args, client: CafeClient) -> int:
    email = args.email or input("Email: ")
    password = getpass.getpass("Password: ")

    try:
        user = await client.token_manager.login(email, password)
    except AuthenticationError as e:
        output(args, {'authenticated': False, 'error': e.to_dict()}, f"Login failed: {e.message}", error=True)
        return EXIT_AUTH_REQUIRED

    name = user.get('name') or user.get('email') or client.token_manager.get_current_user_id()
    output(args, {'authenticated': True, 'user': user}, f"Signed in as {name}")
    return EXIT_SUCCESS


async def handle_logout(args, client: CafeClient) -> int:
    client.token_manager.logout()
    output(args, {'authenticated': False}, "Signed out")
    return EXIT_SUCCESS


async def handle_whoami(args, client: CafeClient) -> int:
    if not await require_session(args, client):
        return EXIT_AUTH_REQUIRED

    profile = await client.api_client.get_profile()
    if args.json:
        output(args, {'authenticated': True, 'user': profile, 'session': client.token_manager.get_session_info()}, "")
    else:
        print(f"User: {profile.get('name') or profile.get('email') or client.token_manager.get_current_user_id()}")
        if profile.get('email'):
            print(f"Email: {profile['email']}")
        if profile.get('role'):
            print(f"Role: {profile['role']}")
    return EXIT_SUCCESS


async def handle_check_payment(args, client: CafeClient) -> int:
    if not await require_session(args, client):
        return EXIT_AUTH_REQUIRED

    status = await client.api_client.check_payment_status(args.order_code)
    result = decode_status(status)

    output(
        args,
        {'order_code': status.order_code, 'is_paid': status.is_paid, 'order_status': status.order_status},
        f"Order {status.order_code}: {'paid' if status.is_paid else status.order_status}"
    )

    if result is not None and not result.succeeded:
        return EXIT_PAYMENT_FAILED
    return EXIT_SUCCESS


async def handle_watch_payment(args, client: CafeClient) -> int:
    if not await require_session(args, client):
        return EXIT_AUTH_REQUIRED

    logged_out = [False]

    def on_logout():
        logged_out[0] = True
        watch.cancel()

    def on_error(error: Exception):
        logger.warning(f"Payment watch problem: {error}")

    watch = await client.reconciler.watch(args.order_code, on_error=on_error)
    client.token_manager.add_logout_callback(on_logout)

    if not args.json:
        print(f"Waiting for payment of order {args.order_code}...")

    try:
        result: Optional[PaymentResult] = await watch.wait_for_result(args.timeout)
    except asyncio.TimeoutError:
        watch.cancel()
        output(args, {'order_code': args.order_code, 'outcome': 'timeout'},
               f"No payment outcome after {args.timeout:g} seconds", error=True)
        return EXIT_TIMEOUT
    finally:
        client.token_manager.remove_logout_callback(on_logout)

    if result is None:
        if logged_out[0]:
            output(args, {'order_code': args.order_code, 'authenticated': False},
                   "Session expired. Run 'login' again.", error=True)
            return EXIT_AUTH_REQUIRED
        return EXIT_FAILURE

    output(args, result_to_dict(result), f"Order {result.order_code}: {result.message}", error=not result.succeeded)
    return EXIT_SUCCESS if result.succeeded else EXIT_PAYMENT_FAILED


COMMANDS = {
    'login': handle_login,
    'logout': handle_logout,
    'whoami': handle_whoami,
    'check-payment': handle_check_payment,
    'watch-payment': handle_watch_payment,
}


async def run_command(args, config: ClientConfiguration) -> int:
    """Run one command against a freshly wired client."""
    async with create_client(config) as client:
        try:
            return await COMMANDS[args.command](args, client)
        except AuthenticationError as e:
            output(args, {'error': e.to_dict()}, f"Authentication required: {e.message}", error=True)
            return EXIT_AUTH_REQUIRED
        except APIClientError as e:
            output(args, {'error': e.to_dict()}, f"Error: {e.message}", error=True)
            return EXIT_FAILURE


def main(argv=None):
    """Main entry point for the client."""
    args = None
    try:
        args = parse_arguments(argv)

        config = ClientConfiguration(args.config)
        if args.server_url:
            config.set_override('server.url', args.server_url)

        configure_logging(args, config)

        return asyncio.run(run_command(args, config))

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_INTERRUPTED
    except CafeClientError as e:
        print(f"Error: {e.user_message or e.message}", file=sys.stderr)
        return EXIT_FAILURE
    except Exception as e:
        print(f"Fatal error: {str(e)}", file=sys.stderr)
        if not getattr(args, 'json', False):
            logger.exception("Fatal error in main")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
