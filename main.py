"""AI Guardian: console launcher. Plays one conversation from the terminal."""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from guardian.config import load_config
from guardian.events import BonusOfferEvent, ContentEvent, ErrorEvent, SecretFoundEvent
from guardian.llm import EchoLLM
from guardian.models import BonusState, Rejection, User
from guardian.pipeline import Orchestrator
from guardian.storage import Storage

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

DATA_DIR = os.getenv("GUARDIAN_DATA_DIR", str(ROOT / "data"))


async def play(orchestrator: Orchestrator, storage: Storage, user: User) -> None:
    conversation = orchestrator.start_conversation(user)
    if isinstance(conversation, Rejection):
        print(conversation.message)
        return
    print(f"guardian> {conversation.messages[0].content}" if conversation.messages else "")

    while True:
        try:
            text = input(f"{user.nickname}> ")
        except EOFError:
            print()
            return

        if text.strip() in ("/claim", "/continue"):
            result = orchestrator.choose_bonus(user, conversation, text.strip()[1:])
            print(result.message)
        else:
            result = orchestrator.send_message(user, conversation, text)
            if isinstance(result, Rejection):
                print(result.message)
                return
            print("guardian> ", end="", flush=True)
            async for event in result:
                if isinstance(event, ContentEvent):
                    print(event.content, end="", flush=True)
                elif isinstance(event, SecretFoundEvent):
                    first = " (first winner!)" if event.is_first_winner else ""
                    print(f"\n*** {event.label}: {event.secret} {event.reward}{first}")
                elif isinstance(event, BonusOfferEvent):
                    print(
                        f"\n*** {event.total_turns} turns played. Type /claim for "
                        f"{event.consolation_reward} now, or /continue to play for the grand prize."
                    )
                elif isinstance(event, ErrorEvent):
                    print(f"\n!!! {event.message}")
            print()

        conversation = storage.get_conversation(conversation.id)
        if conversation is None or not conversation.is_active:
            print("Conversation over.")
            if storage.get_bonus_status(user.id) is BonusState.OFFERED:
                print("Your bonus offer is still open: start a new conversation to /claim or /continue.")
            return


def main():
    parser = argparse.ArgumentParser(description="AI Guardian console")
    parser.add_argument("--config", type=Path, default=ROOT / "config.json",
                        help="JSON config file (default: ./config.json)")
    parser.add_argument("--data-dir", type=Path, default=Path(DATA_DIR),
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--user", default="local", help="User id")
    parser.add_argument("--nickname", default="player", help="Display name")
    parser.add_argument("--echo", action="store_true",
                        help="Use the echo LLM instead of the configured backend")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    config = load_config(args.config)
    storage = Storage(args.data_dir)
    orchestrator = Orchestrator.from_config(
        config, storage, llm=EchoLLM() if args.echo else None
    )

    try:
        asyncio.run(play(orchestrator, storage, User(id=args.user, nickname=args.nickname)))
    except KeyboardInterrupt:
        print("\nShutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
