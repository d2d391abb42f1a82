"""JSON hub protocol framing used by the push channel.

Each websocket text message carries one or more JSON records terminated by
the record separator ``\\x1e``. Record types we care about::

    {"type": 1, "target": "ReceiveSensorReading", "arguments": [{...}]}  # invocation
    {"type": 6}                                                           # ping
    {"type": 7, "error": "...", "allowReconnect": true}                   # close

The handshake request is ``{"protocol":"json","version":1}`` and the server
answers with ``{}`` or ``{"error": "..."}``.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

from sensor_live.exceptions import PayloadError

RECORD_SEPARATOR = "\x1e"

INVOCATION = 1
PING = 6
CLOSE = 7


@dataclass(frozen=True, slots=True)
class ChannelMessage:
    kind: Literal["event", "close"]
    target: str | None = None
    arguments: list[Any] = field(default_factory=list)
    error: str | None = None
    allow_reconnect: bool = True


def encode_handshake() -> str:
    return json.dumps({"protocol": "json", "version": 1}) + RECORD_SEPARATOR


def _split_records(text: str) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    for chunk in text.split(RECORD_SEPARATOR):
        if not chunk.strip():
            continue
        try:
            record = json.loads(chunk)
        except json.JSONDecodeError as exc:
            raise PayloadError(f"Undecodable hub record: {exc}") from exc
        if not isinstance(record, dict):
            raise PayloadError("Hub record must be a JSON object")
        records.append(record)
    return records


def check_handshake_response(text: str) -> list[ChannelMessage]:
    """Validate the handshake reply; returns messages sent in the same frame after it."""
    records = _split_records(text)
    if not records:
        raise PayloadError("Empty handshake response")
    error = records[0].get("error")
    if error:
        raise PayloadError(f"Handshake rejected: {error}")
    return _to_messages(records[1:])


def decode_frame(text: str) -> list[ChannelMessage]:
    """Decode one websocket text frame into channel messages.

    Pings, acks and message types the client does not consume are dropped.
    """
    return _to_messages(_split_records(text))


def _to_messages(records: list[dict[str, Any]]) -> list[ChannelMessage]:
    out: list[ChannelMessage] = []
    for record in records:
        kind = record.get("type")
        if kind == PING:
            continue
        if kind == INVOCATION:
            target = record.get("target")
            args = record.get("arguments")
            if not isinstance(target, str):
                raise PayloadError("Invocation without target")
            out.append(
                ChannelMessage(kind="event", target=target, arguments=args if isinstance(args, list) else [])
            )
        elif kind == CLOSE:
            error = record.get("error")
            out.append(
                ChannelMessage(
                    kind="close",
                    error=str(error) if error else None,
                    allow_reconnect=bool(record.get("allowReconnect", False)),
                )
            )
    return out
