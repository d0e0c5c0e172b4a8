"""NDJSON encoding of repair run events.

Every line is one JSON object with ``type``, a monotonically increasing
``count`` and an ISO-8601 ``timestamp``. A stream always ends with exactly
one ``result`` line, unless the client went away first.
"""
from __future__ import annotations

import json
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from mermaid_fix_agent.events import StreamEvent
from mermaid_fix_agent.logging import get_logger

logger = get_logger("encoder")

RESULT = "result"

FallbackFactory = Callable[[BaseException | None], dict[str, Any]]
DisconnectCheck = Callable[[], Awaitable[bool]]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def failure_payload(
    validation_error: str | None,
    error: BaseException | str | None = None,
) -> dict[str, Any]:
    """Best-effort final payload for a run that could not finish normally."""
    if isinstance(error, BaseException):
        message = str(error) or error.__class__.__name__
    else:
        message = error or "Unknown streaming error"
    return {
        "success": False,
        "isComplete": False,
        "validated": False,
        "validationError": validation_error,
        "message": message,
        "attempts": [],
    }


class EventStreamEncoder:
    """Serializes ``StreamEvent``s into NDJSON lines.

    Usage:
        encoder = EventStreamEncoder()
        for event in events:
            out.write(encoder.encode(event))
    """

    def __init__(self) -> None:
        self.count = 0
        self.final_written = False

    def _line(self, type_: str, payload: dict[str, Any]) -> str:
        self.count += 1
        data = {"type": type_, "count": self.count, **payload, "timestamp": _now()}
        # Serialize fully before returning so a line is never written half-way
        return json.dumps(data, ensure_ascii=False, default=str) + "\n"

    def encode(self, event: StreamEvent) -> str:
        if event.type == RESULT:
            if self.final_written:
                raise RuntimeError("Final result already written")
            self.final_written = True
        return self._line(event.type, event.to_dict())

    def encode_result(self, payload: dict[str, Any]) -> str:
        """Encode a raw final payload (used for fallbacks)."""
        if self.final_written:
            raise RuntimeError("Final result already written")
        self.final_written = True
        return self._line(RESULT, payload)


async def encode_stream(
    events: AsyncIterator[StreamEvent],
    fallback: FallbackFactory | None = None,
    is_disconnected: DisconnectCheck | None = None,
    encoder: EventStreamEncoder | None = None,
) -> AsyncIterator[str]:
    """
    Encode a run's events as NDJSON lines.

    Args:
        events: The run's event generator
        fallback: Builds the final payload if the run raises or ends
            without a result
        is_disconnected: Polled before each line; when it returns True the
            stream stops without a final line
        encoder: Encoder to use (a fresh one by default)

    Yields:
        Complete NDJSON lines
    """
    encoder = encoder or EventStreamEncoder()
    fallback = fallback or (lambda exc: failure_payload(None, exc))

    try:
        async for event in events:
            if is_disconnected is not None and await is_disconnected():
                logger.info("Client disconnected after %d event(s); stopping", encoder.count)
                return
            yield encoder.encode(event)
    except Exception as e:
        logger.error("Repair stream failed: %s", e)
        if not encoder.final_written:
            yield encoder.encode_result(fallback(e))
        return
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()

    if not encoder.final_written:
        logger.warning("Repair stream ended without a result; writing fallback")
        yield encoder.encode_result(fallback(None))
