"""Command-line client for a realtime coaching call.

Starts one call with the configured microphone, prints status changes and
elapsed time, and accepts a few slash commands on stdin until the call ends.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from realtime_coach.cache import ToolResultCache
from realtime_coach.config import CoachConfig
from realtime_coach.errors import FATAL_START_ERRORS
from realtime_coach.session import ConnectionStatus, ControllerEvent, SessionController
from realtime_coach.tools import CACHE_KEYS
from realtime_coach.utils.logging import setup_logging

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /status - Show connection status and elapsed time
  /cache  - Show cached plan results
  /stop   - End the call (alias: /quit)
  /help   - Show this help
"""


def format_elapsed(seconds: int) -> str:
    """Format elapsed seconds as MM:SS."""
    minutes, secs = divmod(max(seconds, 0), 60)
    return f"{minutes:02d}:{secs:02d}"


def render_cache(cache: ToolResultCache) -> str:
    """Render the cached plan results, one block per key."""
    lines = []
    for key in CACHE_KEYS:
        value = cache.read_last(key)
        if value is None:
            lines.append(f"{key}: (empty)")
        else:
            lines.append(f"{key}: {json.dumps(value, indent=2)}")
    return "\n".join(lines)


class CoachCLI:
    """Interactive client around a SessionController."""

    def __init__(
        self,
        controller: SessionController,
        verbose: bool = False,
        output: Callable[[str], None] = print,
    ) -> None:
        """Initialize CLI client.

        Args:
            controller: Session controller to drive
            verbose: Print every received protocol event
            output: Line printer
        """
        self.controller = controller
        self.verbose = verbose
        self.output = output
        self.running = True
        self.end_reason: str | None = None
        self._ended = asyncio.Event()
        self._stop_task: asyncio.Task[None] | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cli-input")

    def on_event(self, event: ControllerEvent) -> None:
        """Print controller notifications."""
        if event.kind == "status":
            self.output(f"Status: {event.status.value}")
            if event.status is ConnectionStatus.DISCONNECTED:
                self._ended.set()
        elif event.kind == "tick":
            if self.verbose:
                self.output(f"Elapsed: {format_elapsed(event.payload)}")
        elif event.kind == "protocol":
            if self.verbose:
                self.output(f"<- {event.payload.type}")
        elif event.kind == "error":
            self.output(f"Error: {event.error}")
        elif event.kind == "ended":
            self.end_reason = event.payload.get("reason") if event.payload else None
            self.output(f"Call ended ({self.end_reason})")
            self._ended.set()

    async def handle_command(self, text: str) -> bool:
        """Handle one line of user input.

        Returns:
            False once the user asked to end the call
        """
        text = text.strip()
        if not text:
            return True
        if not text.startswith("/"):
            self.output("The call is voice-driven; type /help for commands")
            return True

        command = text[1:].lower()
        if command in ("stop", "quit"):
            await self.controller.stop()
            return False
        if command == "status":
            self.output(
                f"Status: {self.controller.status().value} "
                f"({format_elapsed(self.controller.elapsed_seconds)})"
            )
            state = self.controller.engine_state
            if state is not None:
                self.output(f"Plan step: {state.value}")
        elif command == "cache":
            self.output(render_cache(self.controller.cache))
        elif command == "help":
            self.output(HELP_TEXT)
        else:
            self.output(f"Unknown command: {command}")
            self.output("Type /help for available commands")
        return True

    async def input_loop(self) -> None:
        """Read commands from stdin until the call ends."""
        loop = asyncio.get_running_loop()
        while self.running:
            try:
                text = await loop.run_in_executor(self._executor, input, "")
            except EOFError:
                break
            if not await self.handle_command(text):
                break

    def request_stop(self) -> None:
        """Signal handler: stop the call and let run() return."""
        self.running = False
        if self._stop_task is None:
            self._stop_task = asyncio.get_running_loop().create_task(self.controller.stop())
        self._ended.set()

    async def run(self) -> int:
        """Run one call.

        Returns:
            Process exit code
        """
        unsubscribe = self.controller.subscribe(self.on_event)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)

        try:
            try:
                await self.controller.start()
            except FATAL_START_ERRORS as e:
                logger.error("Call failed to start", extra={"code": e.code})
                return 1

            if self.controller.status() is ConnectionStatus.DISCONNECTED:
                return 0

            self.output(HELP_TEXT)
            input_task = asyncio.create_task(self.input_loop())
            ended_task = asyncio.create_task(self._ended.wait())
            await asyncio.wait({input_task, ended_task}, return_when=asyncio.FIRST_COMPLETED)
            for task in (input_task, ended_task):
                task.cancel()
            await self.controller.stop()
            return 0
        finally:
            if self._stop_task is not None:
                await self._stop_task
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            unsubscribe()
            self.running = False
            # A pending input() cannot be interrupted; do not wait for it
            self._executor.shutdown(wait=False)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Realtime voice coach for reviewing a weekly exercise plan"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration YAML file (default: built-in defaults)",
    )
    parser.add_argument(
        "--show-cache",
        action="store_true",
        help="Print the cached plan results and exit",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging and print protocol events",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the coaching client."""
    args = parse_args(argv)

    try:
        config = CoachConfig.from_yaml_with_defaults(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    level = "DEBUG" if args.verbose else config.log_level
    setup_logging(level=level, json_format=args.json_logs)

    if args.show_cache:
        print(render_cache(ToolResultCache(config.cache.directory)))
        sys.exit(0)

    async def run() -> int:
        client = CoachCLI(SessionController(config), verbose=args.verbose)
        return await client.run()

    try:
        exit_code = asyncio.run(run())
    except KeyboardInterrupt:
        print("\nExiting...")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
