#!/usr/bin/env python3
"""
Command line entry point for the Profile Session client.

Inspects and maintains the session stored in the shared storage area.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict

from session_shared.exceptions import handle_exception
from session_shared.logging_config import LogFormat, LogLevel, log_structured_error, setup_logging
from session_shared.models import RefreshOutcome
from session_client.api_client import IdentityProviderClient, ProfileGatewayClient
from session_client.config import ClientConfiguration
from session_client.runtime import SharedSessionContext
from session_client.session_controller import SessionController

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NOT_SIGNED_IN = 2
EXIT_REFRESH_FAILED = 3


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="profile-session",
        description="Profile Session client",
        epilog="""
Examples:
  %(prog)s --status           # Show the stored session
  %(prog)s --status --json    # Same, as JSON
  %(prog)s --refresh          # Renew the stored credential now
  %(prog)s --clear            # Forget the stored session
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    operation_group = parser.add_mutually_exclusive_group(required=True)
    operation_group.add_argument("--status", action="store_true", help="Show stored session state")
    operation_group.add_argument("--refresh", action="store_true", help="Renew the stored credential")
    operation_group.add_argument("--clear", action="store_true", help="Clear the stored session")

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE", help="Configuration file path")
    config_group.add_argument("--profile-url", type=str, metavar="URL", help="Override profile API URL")
    config_group.add_argument("--refresh-url", type=str, metavar="URL", help="Override token endpoint URL")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true", help="Output in JSON format")
    output_group.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    output_group.add_argument("--quiet", "-q", action="store_true", help="Suppress non-error output")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true", help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE", help="Write logs to file")

    return parser.parse_args(argv)


def configure_logging(args, config: ClientConfiguration) -> None:
    if args.debug:
        level = LogLevel.DEBUG
    elif args.verbose:
        level = LogLevel.INFO
    elif args.quiet or args.json:
        level = LogLevel.ERROR
    else:
        level = LogLevel(config.get_log_level()) if config.get_log_level() in LogLevel.__members__ else LogLevel.WARNING

    try:
        log_format = LogFormat(config.get_log_format())
    except ValueError:
        log_format = LogFormat.STANDARD

    setup_logging(
        log_level=level,
        log_format=LogFormat.DETAILED if args.debug else log_format,
        log_file=args.log_file or config.get_log_file(),
        audit_file=config.get_audit_file(),
        enable_audit=config.get_audit_file() is not None
    )


def session_summary(controller: SessionController) -> Dict[str, Any]:
    now = controller.context.clock()
    credential = controller.store.get()
    token_info = controller.store.get_token_info()
    snapshot = controller.snapshot
    local = controller.store.get_local_measurement()
    user_info = controller.user_info
    return {
        'state': controller.state.value,
        'credential_kind': credential.kind.value if credential else None,
        'refreshable': bool(credential and credential.refresh_token),
        'expires_in': int(token_info.remaining(now)) if token_info else None,
        'profile_slots': sorted(snapshot.slots) if snapshot else [],
        'default_slot': snapshot.default_slot if snapshot else None,
        'local_measurement': local is not None,
        'user': user_info.email or user_info.name if user_info else None,
    }


def print_summary(summary: Dict[str, Any], args) -> None:
    if args.json:
        print(json.dumps(summary))
        return
    if args.quiet:
        return
    print(f"Session: {summary['state'].upper()}")
    if args.verbose or summary['credential_kind']:
        print(f"Credential: {summary['credential_kind'] or 'none'}"
              f"{' (refreshable)' if summary['refreshable'] else ''}")
        if summary['expires_in'] is not None:
            print(f"Expires in: {max(0, summary['expires_in'])}s")
    if args.verbose:
        print(f"User: {summary['user'] or 'unknown'}")
        print(f"Profile slots: {', '.join(summary['profile_slots']) or 'none'}")
        print(f"Default slot: {summary['default_slot'] or 'none'}")
        print(f"Local measurement: {'yes' if summary['local_measurement'] else 'no'}")


async def run_command(args, config: ClientConfiguration) -> int:
    context = SharedSessionContext.install(SharedSessionContext.from_config(config))
    gateway = ProfileGatewayClient.from_config(config)
    identity = IdentityProviderClient.from_config(config)
    controller = SessionController.from_config(config, gateway, identity_provider=identity, context=context)

    try:
        if args.status:
            print_summary(session_summary(controller), args)
            return EXIT_OK

        if args.clear:
            await controller.sign_out()
            if not args.quiet:
                print("Session cleared")
            return EXIT_OK

        if controller.store.get() is None:
            if not args.quiet:
                print("Not signed in", file=sys.stderr)
            return EXIT_NOT_SIGNED_IN

        outcome = await controller.refresher.refresh(reason="command line")
        if not args.quiet:
            print(f"Refresh: {outcome.value}")
        return EXIT_OK if outcome == RefreshOutcome.REFRESHED else EXIT_REFRESH_FAILED
    finally:
        await controller.close()
        await gateway.close()
        await identity.close()
        SharedSessionContext.reset_instance()


def main(argv=None) -> int:
    """Main entry point for the command line client."""
    args = parse_arguments(argv)
    try:
        config = ClientConfiguration(args.config)
        if args.profile_url:
            config.set_override('gateway.profile_url', args.profile_url)
        if args.refresh_url:
            config.set_override('gateway.refresh_url', args.refresh_url)
        configure_logging(args, config)
        return asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        error = handle_exception(e, context={'argv': argv if argv is not None else sys.argv[1:]})
        log_structured_error(logger, error)
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {error.user_message}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
