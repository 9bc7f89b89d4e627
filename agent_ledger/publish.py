"""
Downstream handoff of newly committed messages.

After each source's transaction commits, the coordinator hands the exact
batch of messages it inserted to every registered sink. Delivery is
at-least-once; consumers deduplicate on (thread_id, seq).
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol
import json
import logging

from agent_ledger.ingest.types import ParsedMessage, utc_now

logger = logging.getLogger("agent_ledger.publish")


@dataclass
class MessageBatch:
    """Messages committed together for one source file."""
    source_path: str
    messages: list[ParsedMessage]
    committed_at: datetime

    def __len__(self) -> int:
        return len(self.messages)


class MessageSink(Protocol):
    def publish(self, batch: MessageBatch) -> None: ...


def message_event(message: ParsedMessage) -> dict[str, Any]:
    """Flat, JSON-ready view of a message for downstream consumers."""
    return {
        "thread_id": message.thread_id,
        "seq": message.seq,
        "session_id": message.session_id,
        "emitted_at": message.emitted_at.isoformat(),
        "observed_at": message.observed_at.isoformat(),
        "author_role": message.author_role.value,
        "message_type": message.message_type.value,
        "content": message.content,
        "tool_name": message.tool_name,
        "call_id": message.call_id,
        "tokens_in": message.tokens_in,
        "tokens_out": message.tokens_out,
        "source_path": message.source_path,
        "source_offset": message.source_offset,
    }


class JsonlOutboxSink:
    """Appends one JSON line per committed message to an outbox file."""

    def __init__(self, path: Path | str):
        self.path = Path(path).expanduser()

    def publish(self, batch: MessageBatch) -> None:
        if not batch.messages:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            for message in batch.messages:
                event = message_event(message)
                event["committed_at"] = batch.committed_at.isoformat()
                f.write(json.dumps(event, ensure_ascii=False) + "\n")
        logger.debug("Wrote %d event(s) for %s to %s", len(batch), batch.source_path, self.path)


class CollectingSink:
    """Keeps batches in memory; used by tests and embedding callers."""

    def __init__(self):
        self.batches: list[MessageBatch] = []

    def publish(self, batch: MessageBatch) -> None:
        self.batches.append(batch)

    @property
    def messages(self) -> list[ParsedMessage]:
        return [m for batch in self.batches for m in batch.messages]


def make_batch(source_path: str, messages: list[ParsedMessage]) -> MessageBatch:
    return MessageBatch(source_path=source_path, messages=list(messages), committed_at=utc_now())
