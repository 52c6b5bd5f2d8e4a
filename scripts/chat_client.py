"""Terminal client for the chat relay (one conversation per run)."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from chat_relay.client import AssemblerEvent, ChatClient, ConnectionStatus, EventKind  # noqa: E402
from chat_relay.config import load_config  # noqa: E402


def _render(event: AssemblerEvent | None) -> None:
    if event is None:
        return
    if event.kind is EventKind.COMPOSING:
        print("assistant: ", end="", flush=True)
    elif event.kind is EventKind.UPDATE:
        # redraw the whole partial line
        print(f"\rassistant: {event.text}", end="", flush=True)
    elif event.kind is EventKind.COMPLETE:
        print(f"\rassistant: {event.text}")
    elif event.kind is EventKind.FAILED:
        print(f"\n[error] {event.text}")


async def _chat(client: ChatClient) -> None:
    client.events.subscribe(_render)
    client.status.subscribe(lambda s: print(f"[{s.value}]"))
    client.error.subscribe(lambda e: e and print(f"[connection] {e}"))

    async with client:
        if not await client.connection.wait_for(ConnectionStatus.CONNECTED, timeout=15):
            print("Could not connect.")
            return
        print(f"session {client.session_id}: type /new for a new conversation, /quit to exit")
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            text = line.strip()
            if text == "/quit":
                break
            if text == "/new":
                print(f"session {client.new_conversation()}")
                continue
            if text:
                await client.send_message(text)


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with a running relay server.")
    parser.add_argument("--url", type=str, default=None, help="WebSocket URL (default: client.url from config)")
    parser.add_argument("--config", type=str, default=None, help="Path to a YAML config file")
    parser.add_argument("--user", type=str, default=None, help="Optional userId sent with messages")
    args = parser.parse_args()

    cfg = load_config(args.config)
    level = str((cfg.get("logging") or {}).get("level", "WARNING")).upper()
    logging.basicConfig(level=level)

    client = ChatClient.from_config(cfg, url=args.url, user_id=args.user)
    try:
        asyncio.run(_chat(client))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
