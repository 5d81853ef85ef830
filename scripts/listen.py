#!/usr/bin/env python3
"""Log in and print realtime traffic until interrupted.

Useful for checking a backend's STOMP endpoint and token renewal by hand.

Run (local):
  SPORTMATCH_EMAIL=me@example.com SPORTMATCH_PASSWORD=secret python -m scripts.listen

Optional env vars:
  SPORTMATCH_API_URL="http://localhost:8080/api"
  SPORTMATCH_WS_URL="http://localhost:8080/ws"
  SPORTMATCH_REDIS_URL="redis://localhost:6379/0"   (reuse a persisted session)
  LISTEN_CONVERSATIONS="12,15"                       (join these conversations)
"""

import asyncio
import logging
import os
import sys

# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sportmatch.client import SportMatchClient  # noqa: E402
from sportmatch.services.signals import (  # noqa: E402
    CredentialRotated,
    MatchFound,
    MessageReceived,
    SessionEnded,
    TransportUnavailable,
)

logger = logging.getLogger("sportmatch")


def _parse_csv_ints(name: str) -> list[int]:
    raw = os.getenv(name, "")
    return [int(p) for p in raw.split(",") if p.strip().isdigit()]


async def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    async with SportMatchClient() as client:
        if not await client.auth.validate_session():
            email = os.getenv("SPORTMATCH_EMAIL", "")
            password = os.getenv("SPORTMATCH_PASSWORD", "")
            if not email or not password:
                print("No stored session; set SPORTMATCH_EMAIL and SPORTMATCH_PASSWORD")
                return 2
            await client.auth.login(email, password)

        user = client.store.user
        if user is None:
            print("Login succeeded but the server returned no user")
            return 1

        stopped = asyncio.Event()
        client.bus.connect(MessageReceived, lambda s: print(f"[message] {s.message}"))
        client.bus.connect(MatchFound, lambda s: print(f"[match:{s.source}] {s.payload}"))
        client.bus.connect(CredentialRotated, lambda s: print(f"[auth] rotated (epoch {s.epoch})"))
        client.bus.connect(SessionEnded, lambda s: (print(f"[auth] ended: {s.reason}"), stopped.set()))
        client.bus.connect(
            TransportUnavailable, lambda s: (print(f"[ws] gave up after {s.attempts}"), stopped.set())
        )

        client.realtime.connect()
        await client.realtime.wait_connected(timeout=client.settings.request_timeout)
        await client.chat.attach(user.id)
        for conversation_id in _parse_csv_ints("LISTEN_CONVERSATIONS"):
            await client.chat.join_conversation(conversation_id)

        print(f"Listening as user {user.id}; Ctrl+C to stop")
        await stopped.wait()
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        raise SystemExit(130)
