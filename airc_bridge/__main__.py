"""
AIRC Bridge CLI

Runs a relay bridge until interrupted.

Usage:
    python -m airc_bridge [handle] [working_on] [--gateway URL] [--registry URL]

Settings not given on the command line are read from AIRC_* environment
variables (see airc_bridge.config). Without a handle a throwaway one is
generated.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

from dotenv import find_dotenv, load_dotenv

from airc_bridge import __version__
from airc_bridge.config import BridgeConfig, generate_handle, load_bridge_config
from airc_bridge.errors import AIRCError
from airc_bridge.registry.models import InboundMessage
from airc_bridge.transport.bridge import RelayBridge

logger = logging.getLogger("airc_bridge")

CLI_WORKING_ON = "OpenClaw agent with AIRC identity"

BANNER = f"""
{"=" * 61}
  airc-bridge v{__version__}
  Verified identity for agents on a local gateway
{"=" * 61}
"""


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="airc-bridge",
        description="Register an agent on AIRC and relay its messages to a local gateway.",
    )
    parser.add_argument("handle", nargs="?", default=None, help="Agent handle (generated if omitted)")
    parser.add_argument("working_on", nargs="?", default=None, help="Status line published with presence")
    parser.add_argument("--registry", default=None, help="AIRC registry base URL")
    parser.add_argument("--gateway", default=None, help="Host gateway websocket URL")
    parser.add_argument("--operator", default=None, help="Human operator handle")
    parser.add_argument(
        "--no-auto-accept",
        action="store_true",
        help="Forward consent requests to the gateway instead of accepting them",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    return parser.parse_args(argv)


def _on_ready(handle: str):
    def on_ready() -> None:
        print(f"\n@{handle} is now live on AIRC")
        print("  -> Discoverable through the registry")
        print("  -> Messages require consent\n")
    return on_ready


def _on_message(message: InboundMessage) -> None:
    print(f"\nMessage from @{message.sender}:")
    print(f"   {message.text}\n")


def _on_error(error: Exception) -> None:
    print(f"\nError: {error}\n", file=sys.stderr)


async def _run(config: BridgeConfig) -> int:
    bridge = RelayBridge(config)
    shutdown = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt is handled in main()
            continue

    try:
        await bridge.start()
    except AIRCError as e:
        logger.error(f"Failed to start bridge: {e}")
        await bridge.aclose()
        return 1

    try:
        await shutdown.wait()
    finally:
        print("\nShutting down...")
        await bridge.aclose()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    load_dotenv(find_dotenv(usecwd=True))

    handle = args.handle or os.getenv("AIRC_HANDLE") or generate_handle()
    working_on = args.working_on or os.getenv("AIRC_WORKING_ON") or CLI_WORKING_ON

    try:
        config = load_bridge_config(
            handle=handle,
            working_on=working_on,
            registry_url=args.registry,
            gateway_url=args.gateway,
            operator=args.operator,
            auto_accept_consent=False if args.no_auto_accept else None,
            on_ready=_on_ready(handle),
            on_message=_on_message,
            on_error=_on_error,
        )
    except AIRCError as e:
        logger.error(str(e))
        return 1

    print(BANNER)
    try:
        return asyncio.run(_run(config))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
