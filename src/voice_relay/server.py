"""Voice relay process entry point.

Wires configuration, the transformation client, the control plane and the
session coordinator together and runs until SIGINT/SIGTERM.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from aiohttp import web
from dotenv import load_dotenv

from voice_relay.audio.silence import SilenceGate
from voice_relay.config import RelayConfig
from voice_relay.control_plane import create_app, start_control_plane
from voice_relay.coordinator import SessionCoordinator
from voice_relay.transform_client import TransformClient
from voice_relay.utils.logging import setup_logging
from voice_relay.voices import HttpVoiceLookup, InMemoryVoiceStore, VoiceAssigner, VoiceLookup

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Voice relay - transforms each participant's voice in a LiveKit room"
    )
    parser.add_argument(
        "room",
        nargs="?",
        default=None,
        help="Room to join (default: livekit.room_name from config)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/relay.yaml"),
        help="Path to relay configuration YAML file (default: configs/relay.yaml)",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=Path(".env"),
        help="Environment file loaded before configuration (default: .env)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level from config",
    )
    parser.add_argument(
        "--no-control-plane",
        action="store_true",
        help="Do not serve the control plane; look up voices over HTTP instead",
    )
    return parser.parse_args(argv)


def build_transform_client(config: RelayConfig) -> TransformClient:
    gate = SilenceGate(
        threshold_db=config.chunking.silence_threshold_db,
        floor_db=config.chunking.silence_floor_db,
    )
    return TransformClient(
        config.transform,
        gate=gate,
        input_sample_rate=config.chunking.sample_rate,
    )


async def run(config: RelayConfig, room_name: str | None = None) -> int:
    """Run the relay until a shutdown signal arrives.

    Returns:
        Process exit code
    """
    transform_client = build_transform_client(config)
    store = InMemoryVoiceStore()

    lookup: VoiceLookup
    if config.control_plane.enabled:
        lookup = store
    else:
        lookup = HttpVoiceLookup(
            config.control_plane.voice_lookup_url,
            timeout_s=config.control_plane.lookup_timeout_s,
        )
    assigner = VoiceAssigner(
        lookup,
        default_voice_id=config.control_plane.default_voice_id,
        default_voice_name=config.control_plane.default_voice_name,
    )
    coordinator = SessionCoordinator(config, assigner, transform_client)

    runner: web.AppRunner | None = None
    if config.control_plane.enabled:
        app = create_app(config, store, transform_client, status_provider=coordinator.status)
        runner = await start_control_plane(
            app, config.control_plane.host, config.control_plane.port
        )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_shutdown)

    exit_code = 0
    try:
        await coordinator.connect(room_name or config.livekit.room_name)
        logger.info(
            "Voice relay ready",
            extra={
                "room": coordinator.state.room_name,
                "chunk_ms": config.chunking.chunk_ms,
                "control_plane": config.control_plane.enabled,
            },
        )
        await stop_event.wait()
    except ConnectionError as e:
        logger.error("Failed to start voice relay", extra={"error": str(e)})
        exit_code = 1
    finally:
        logger.info("Shutting down voice relay")
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

        await coordinator.close()

        if runner is not None:
            await runner.cleanup()
            logger.info("Control plane server stopped")

    return exit_code


def main(argv: list[str] | None = None) -> None:
    """Command-line entry point."""
    args = parse_args(argv)
    load_dotenv(args.env_file)

    try:
        config = RelayConfig.from_yaml_with_defaults(args.config)
    except Exception as e:
        print(f"Error: Failed to load configuration: {e}", file=sys.stderr)
        sys.exit(1)

    if args.log_level:
        config.log_level = args.log_level
    if args.no_control_plane:
        config.control_plane.enabled = False

    setup_logging(config.log_level)

    missing = config.missing_credentials()
    if missing:
        logger.error(
            "Missing required environment variables",
            extra={"missing": missing},
        )
        for name in missing:
            print(f"Error: {name} is not set", file=sys.stderr)
        sys.exit(1)

    logger.info(
        "Starting voice relay",
        extra={"config_path": str(args.config), "url": config.livekit.url},
    )

    try:
        exit_code = asyncio.run(run(config, args.room))
    except KeyboardInterrupt:
        logger.info("Voice relay interrupted by user")
        exit_code = 0

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
