#!/usr/bin/env python3
"""
chat_cli.py — Send one message to the chat-stream endpoint from a terminal

Usage:
  python3 chat_cli.py <message...> [--patient-id N] [--conversation-id ID]

Reads SUPABASE_URL and SUPABASE_PUBLISHABLE_KEY from the environment.
Deltas are written to stdout as they arrive; the conversation id goes to
stderr so it can be passed back with --conversation-id.

Exit codes:
  0 = success
  1 = stream or transport error
  4 = invalid invocation or configuration
"""

import asyncio
import logging
import os
import sys
from typing import List, Optional, Tuple

from chat_client import ChatStreamClient
from chat_session import ConversationSession
from config_loader import ConfigError, load_config

USAGE = "Usage: python3 chat_cli.py <message...> [--patient-id N] [--conversation-id ID]"


def parse_args(args: List[str]) -> Tuple[str, Optional[str], Optional[str]]:
    """Split argv into (message, patient_id, conversation_id).

    Raises ValueError on a missing flag value or empty message.
    """
    words: List[str] = []
    patient_id: Optional[str] = None
    conversation_id: Optional[str] = None

    idx = 0
    while idx < len(args):
        arg = args[idx]
        if arg in ("--patient-id", "--conversation-id"):
            if idx + 1 >= len(args):
                raise ValueError(f"{arg} requires a value")
            if arg == "--patient-id":
                patient_id = args[idx + 1]
            else:
                conversation_id = args[idx + 1]
            idx += 2
            continue
        words.append(arg)
        idx += 1

    message = " ".join(words).strip()
    if not message:
        raise ValueError("message is required")
    return message, patient_id, conversation_id


async def _run(
    message: str, patient_id: Optional[str], conversation_id: Optional[str]
) -> int:
    config = load_config()
    errors: List[str] = []

    session = ConversationSession(
        patient_id=patient_id,
        conversation_id=conversation_id,
        on_conversation_id=lambda cid: print(f"[conversation] {cid}", file=sys.stderr),
        default_patient_id=config.default_patient_id,
    )
    client = ChatStreamClient(
        config,
        session,
        on_error=lambda e: errors.append(str(e)),
    )

    def on_delta(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    try:
        ok = await client.send_message(message, on_delta, lambda: print(flush=True))
    finally:
        await client.aclose()

    if not ok:
        for error in errors:
            print(f"ERROR: {error}", file=sys.stderr)
        return 1
    return 0


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("MAMA_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        message, patient_id, conversation_id = parse_args(sys.argv[1:])
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        sys.exit(4)

    try:
        code = asyncio.run(_run(message, patient_id, conversation_id))
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(4)

    sys.exit(code)


if __name__ == "__main__":
    main()
