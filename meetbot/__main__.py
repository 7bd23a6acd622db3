#!/usr/bin/env python3
"""
Meet Bot command line.

Joins a Google Meet meeting, records it until the meeting ends, and
optionally talks with participants.

Usage:
    python -m meetbot https://meet.google.com/abc-defg-hij --name "Notetaker"
    python -m meetbot URL --no-voice -v
    python -m meetbot URL --config meetbot.yaml --bot-id 42 --event-id evt-1 --token $TOKEN
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from meetbot.config import get_config, load_config_file
from meetbot.errors import AdmissionFailure, UnsupportedMeetingError
from meetbot.models import JoinParams
from meetbot.providers.deepgram import DeepgramSTT, DeepgramTTS
from meetbot.providers.openai import OpenAIResponder
from meetbot.providers.storage import LocalFileUploader
from meetbot.session import SessionController

logger = logging.getLogger("meetbot")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_UNSUPPORTED = 2
EXIT_NOT_ADMITTED = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="meetbot",
        description="Google Meet recording bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
    DEEPGRAM_API_KEY        Speech-to-text and text-to-speech
    OPENAI_API_KEY          Conversational replies
    MEETBOT_STATUS_API_URL  Bot management API for status reports
    MEETBOT_CONFIG          YAML config file (same as --config)
""",
    )
    parser.add_argument("url", help="Google Meet URL")
    parser.add_argument("--name", default="", help="Display name for the bot")
    parser.add_argument("--bot-id", default=None, help="Bot id used in status reports")
    parser.add_argument("--event-id", default=None, help="Calendar event id used in status reports")
    parser.add_argument("--token", default="", help="Bearer token for the status API")
    parser.add_argument("--team-id", default="", help="Team the recording belongs to")
    parser.add_argument("--user-id", default="", help="User the recording belongs to")
    parser.add_argument("--timezone", default="UTC", help="Timezone of the meeting owner")
    parser.add_argument("--config", type=Path, default=None, help="YAML config file")
    parser.add_argument("--no-voice", action="store_true", help="Record only, never speak or listen")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


async def run(args: argparse.Namespace) -> int:
    config = get_config()
    if args.config:
        load_config_file(args.config, config)
    if args.headed:
        config.browser.headless = False
    if args.no_voice:
        config.voice.enabled = False

    voice = config.voice.enabled and config.providers.deepgram_api_key and config.providers.openai_api_key
    if config.voice.enabled and not voice:
        logger.warning("DEEPGRAM_API_KEY or OPENAI_API_KEY not set, running without voice")

    controller = SessionController(
        tts=DeepgramTTS(config.providers) if voice else None,
        stt=DeepgramSTT(config.providers, sample_rate=config.voice.sample_rate) if voice else None,
        responder=OpenAIResponder(config.providers) if voice else None,
        config=config,
    )
    params = JoinParams(
        url=args.url,
        name=args.name,
        bearer_token=args.token,
        team_id=args.team_id,
        timezone=args.timezone,
        user_id=args.user_id,
        event_id=args.event_id,
        bot_id=args.bot_id,
        uploader=LocalFileUploader(controller.correlation_id, config.recording.output_dir),
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda s=sig: controller.request_stop_soon(s.name))
        except NotImplementedError:
            pass

    try:
        await controller.join(params)
    except UnsupportedMeetingError as e:
        logger.error(f"Unsupported meeting: {e.reason}")
        return EXIT_UNSUPPORTED
    except AdmissionFailure as e:
        logger.error(f"Not admitted (retryable={e.retryable}): {e}")
        return EXIT_NOT_ADMITTED
    except Exception as e:
        logger.error(f"Session failed: {e}", exc_info=True)
        return EXIT_FAILED

    return EXIT_OK if "finished" in controller.history else EXIT_FAILED


def main() -> None:
    args = build_parser().parse_args()
    setup_logging(args.verbose)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
