"""CLI entry point for the CRM assistant.

A terminal chat loop for development against the in-memory store (or
whatever ``STORE_BACKEND`` selects).  For production, use the FastAPI
server (``crm_assistant/server.py``).

Usage:
    python -m crm_assistant.main                  # normal mode (quiet)
    python -m crm_assistant.main --debug          # debug mode (shows API calls)
    python -m crm_assistant.main --user agent-42  # act as a specific user
"""

from __future__ import annotations

import argparse
import logging
import uuid

from crm_assistant.chat import ChatValidationError, create_chat_service

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("crm_assistant").setLevel(logging.DEBUG if debug else logging.INFO)


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="CRM Assistant CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument("--user", default="local-user", help="User id to chat as")
    args = parser.parse_args()

    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  CRM Assistant - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session.")
    print("=" * 60 + "\n")

    service = create_chat_service()
    session_id = str(uuid.uuid4())
    logger.info("Started new session: %s (user %s)", session_id, args.user)

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break

        if user_input.lower() == "new":
            session_id = str(uuid.uuid4())
            print(f"\n>> New session started: {session_id[:8]}...\n")
            continue

        try:
            outcome = service.handle(args.user, user_input, session_id)
            print(f"\nAssistant: {outcome.response}\n")
        except ChatValidationError as e:
            print(f"\nAssistant: {e}\n")
        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break
        except Exception as e:
            logger.exception("Error processing message")
            print(f"\nAssistant: I'm sorry, something went wrong: {e}")
            print("     Please try again or type 'new' to start a fresh session.\n")


if __name__ == "__main__":
    main()
