"""STOMP 1.2 frame codec.

Frame layout:
    COMMAND\n
    header:value\n
    \n
    body\0

A bare EOL between frames is a heart-beat. Header values are escaped in every
frame except CONNECT/CONNECTED.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import re
from typing import Any

from sportmatch.errors import StompProtocolError

HEARTBEAT = "\n"

_UNESCAPED_COMMANDS = {"CONNECT", "CONNECTED"}
_ESCAPES = [("\\", "\\\\"), ("\r", "\\r"), ("\n", "\\n"), (":", "\\c")]
_UNESCAPES = {"\\\\": "\\", "\\r": "\r", "\\n": "\n", "\\c": ":"}
_HEAD_END = re.compile(rb"\r?\n\r?\n")


def _escape(value: str) -> str:
    for raw, escaped in _ESCAPES:
        value = value.replace(raw, escaped)
    return value


def _unescape(value: str) -> str:
    def _sub(m: re.Match[str]) -> str:
        try:
            return _UNESCAPES[m.group(0)]
        except KeyError:
            raise StompProtocolError(f"Invalid header escape {m.group(0)!r}") from None

    return re.sub(r"\\.", _sub, value)


@dataclass(frozen=True)
class StompFrame:
    command: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    def encode(self) -> str:
        escape = self.command not in _UNESCAPED_COMMANDS
        lines = [self.command]
        for key, value in self.headers.items():
            if escape:
                key, value = _escape(key), _escape(str(value))
            lines.append(f"{key}:{value}")
        return "\n".join(lines) + "\n\n" + self.body + "\0"

    def json(self) -> Any:
        return json.loads(self.body)


class StompParser:
    """Incremental decoder. Keeps partial frames between feeds."""

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, data: str | bytes) -> list[StompFrame]:
        if isinstance(data, str):
            data = data.encode("utf-8")
        buf = self._buffer + data
        frames: list[StompFrame] = []

        while buf:
            # Heart-beats and EOLs between frames
            if buf.startswith(b"\n"):
                buf = buf[1:]
                continue
            if buf.startswith(b"\r\n"):
                buf = buf[2:]
                continue

            m = _HEAD_END.search(buf)
            if not m:
                break
            head = buf[: m.start()].decode("utf-8")
            rest = buf[m.end():]

            lines = [line.rstrip("\r") for line in head.split("\n")]
            command = lines[0].strip()
            escape = command not in _UNESCAPED_COMMANDS
            headers: dict[str, str] = {}
            for line in lines[1:]:
                if ":" not in line:
                    raise StompProtocolError(f"Malformed header line {line!r}")
                key, value = line.split(":", 1)
                if escape:
                    key, value = _unescape(key), _unescape(value)
                # Repeated headers: the first one wins.
                headers.setdefault(key, value)

            length = headers.get("content-length")
            if length is not None:
                try:
                    n = int(length)
                except ValueError:
                    raise StompProtocolError(f"Bad content-length {length!r}") from None
                if len(rest) < n + 1:
                    break
                if rest[n:n + 1] != b"\0":
                    raise StompProtocolError("Frame body not NUL-terminated")
                body, buf = rest[:n], rest[n + 1:]
            else:
                end = rest.find(b"\0")
                if end < 0:
                    break
                body, buf = rest[:end], rest[end + 1:]

            frames.append(StompFrame(command=command, headers=headers, body=body.decode("utf-8")))

        self._buffer = buf
        return frames


def parse_heartbeat(value: str | None) -> tuple[int, int]:
    """Parse a heart-beat header "cx,cy" into (outgoing, incoming) milliseconds."""
    if not value:
        return 0, 0
    try:
        out_ms, in_ms = (int(part.strip()) for part in value.split(","))
    except ValueError:
        raise StompProtocolError(f"Bad heart-beat header {value!r}") from None
    return out_ms, in_ms


def negotiate_heartbeat(client: tuple[int, int], server: tuple[int, int]) -> tuple[int, int]:
    """Return (send_every_ms, expect_every_ms); 0 disables that direction."""
    cx, cy = client
    sx, sy = server
    send_every = max(cx, sy) if cx and sy else 0
    expect_every = max(cy, sx) if cy and sx else 0
    return send_every, expect_every
