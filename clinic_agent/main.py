"""CLI entry point for the clinic scheduling agent.

A terminal chat that plays the patient side of a WhatsApp conversation,
for testing and development.  For production, use the FastAPI server
(clinic_agent/server.py).

Usage:
    python -m clinic_agent.main                        # normal mode (quiet)
    python -m clinic_agent.main --debug                # debug mode (shows API calls)
    python -m clinic_agent.main --phone 5511988887777  # act as another patient
"""

from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from clinic_agent.config import BOT_NAME
from clinic_agent.intake import split_reply
from clinic_agent.runtime import build_runtime
from clinic_agent.services.patients import normalize_address

logger = logging.getLogger(__name__)

DEFAULT_PHONE = "5511900000000"


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("clinic_agent").setLevel(logging.DEBUG if debug else logging.INFO)


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Clinic scheduling agent CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument(
        "--phone", default=DEFAULT_PHONE,
        help="Patient phone number the conversation belongs to",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Clinic Scheduling Agent - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'phone <number>' to switch patient.")
    print("=" * 60 + "\n")

    runtime = build_runtime()
    address = normalize_address(args.phone)
    logger.info("Chatting as %s", address)

    try:
        while True:
            try:
                user_input = input("You: ").strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue

            if user_input.lower() in ("exit", "quit", "q"):
                print("\nGoodbye! Have a great day!")
                break

            if user_input.lower().startswith("phone "):
                address = normalize_address(user_input[6:]) or address
                print(f"\n>> Now chatting as {address}\n")
                continue

            try:
                reply = runtime.agent.process_message(address, user_input)
                for part in split_reply(reply):
                    print(f"\n{BOT_NAME}: {part}")
                print()
            except KeyboardInterrupt:
                print("\n\nGoodbye!")
                break
            except Exception as e:
                logger.exception("Error processing message")
                print(f"\n{BOT_NAME}: I'm sorry, something went wrong: {e}\n")
    finally:
        runtime.close()


if __name__ == "__main__":
    main()
