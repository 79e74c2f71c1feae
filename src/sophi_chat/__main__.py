"""
Entry point for the Sophi Chat console client.

Usage:
    python -m sophi_chat
    python -m sophi_chat --host 192.168.1.100
    python -m sophi_chat --config /path/to/client.yaml
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from sophi_chat.config import ClientConfig, get_config_dir
from sophi_chat.logging_config import setup_logging
from sophi_chat.models import ChatEvent, ConnectionState, EventKind, Role
from sophi_chat.orchestrator import SessionOrchestrator
from sophi_chat.version import __version__

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /login USER PASSWORD   Log in and connect
  /logout                Log out and clear the session
  /record                Start recording a voice message
  /stop                  Stop recording and send it
  /quit                  Exit
Anything else is sent as a message."""


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Sophi Chat console client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Connect to localhost
    python -m sophi_chat

    # Connect to a remote server over HTTPS
    python -m sophi_chat --host chat.example.com --https

    # Use custom config file
    python -m sophi_chat --config ~/my-client.yaml
""",
    )

    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=None,
        help=f"Path to config file (default: {get_config_dir() / 'client.yaml'})",
    )
    parser.add_argument(
        "--host",
        "-H",
        type=str,
        default=None,
        help="Server hostname or IP (overrides config)",
    )
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=None,
        help="Server port (overrides config)",
    )
    parser.add_argument(
        "--https",
        action="store_true",
        help="Use HTTPS for connections",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List available audio input devices and exit",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    return parser.parse_args()


def list_audio_devices() -> None:
    """List available audio input devices."""
    from sophi_chat.audio_recorder import HAS_PYAUDIO, MicrophoneSource

    if not HAS_PYAUDIO:
        print("PyAudio is not installed. Install with: pip install 'sophi-chat[audio]'")
        return

    devices = MicrophoneSource.list_devices()
    if not devices:
        print("No audio input devices found")
        return

    print("Available audio input devices:")
    print("-" * 60)
    for device in devices:
        print(f"  Index: {device['index']}")
        print(f"  Name:  {device['name']}")
        print(f"  Channels: {device['channels']}")
        print(f"  Sample Rate: {device['sample_rate']} Hz")
        print("-" * 60)


def format_event(event: ChatEvent, assistant_name: str = "Sophi") -> str:
    """Render one chat event as a console line."""
    if event.role is Role.SYSTEM:
        return f"* {event.text}"

    speaker = assistant_name if event.role is Role.ASSISTANT else "You"
    line = f"{speaker}: {event.text or ''}"

    if event.kind is EventKind.AUDIO and event.audio_ref is not None:
        line += f" [audio: {event.audio_ref.path}]"
    elif event.kind is EventKind.IMAGE:
        line += "".join(f"\n    [image: {url}]" for url in event.attachments)
    elif event.kind is EventKind.TRANSCRIPTION:
        line = f"{speaker} (transcribed): {event.text or ''}"

    return line


async def handle_command(orchestrator: SessionOrchestrator, line: str) -> bool:
    """Run one console line. Returns False when the user asked to quit."""
    stripped = line.strip()

    if stripped == "/quit":
        return False
    if stripped == "/help":
        print(HELP_TEXT)
    elif stripped.startswith("/login"):
        parts = stripped.split(maxsplit=2)
        if len(parts) != 3:
            print("Usage: /login USER PASSWORD")
        else:
            await orchestrator.login(parts[1], parts[2])
    elif stripped == "/logout":
        await orchestrator.logout()
        print("* Logged out")
    elif stripped == "/record":
        if await orchestrator.start_recording():
            print("* Recording... type /stop to send")
    elif stripped == "/stop":
        await orchestrator.stop_recording()
    else:
        await orchestrator.send_text(line)

    return True


async def run_console(orchestrator: SessionOrchestrator) -> None:
    """Read commands from stdin until /quit or end of input."""
    assistant_name = orchestrator.config.get("chat", "assistant_name", default="Sophi")
    last_state: list[ConnectionState | None] = [None]

    def on_event(event: ChatEvent) -> None:
        print(format_event(event, assistant_name))

    def on_state(state: ConnectionState, waiting: bool) -> None:
        if state is not last_state[0]:
            last_state[0] = state
            print(f"[{state.value}]")

    orchestrator.add_listener(on_event)
    orchestrator.add_state_listener(on_state)

    print(HELP_TEXT)
    await orchestrator.start()

    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            if not await handle_command(orchestrator, line.rstrip("\n")):
                break
    finally:
        await orchestrator.shutdown()


def main() -> int:
    """Main entry point."""
    args = parse_args()

    setup_logging(args.verbose)

    if args.list_devices:
        list_audio_devices()
        return 0

    config = ClientConfig(args.config)

    # Apply command-line overrides
    if args.host:
        config.set("server", "host", value=args.host)
    if args.port:
        config.set("server", "port", value=args.port)
    if args.https:
        config.set("server", "use_https", value=True)

    logger.info(f"Sophi Chat {__version__} using server {config.server_url}")
    orchestrator = SessionOrchestrator(config)

    try:
        asyncio.run(run_console(orchestrator))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
