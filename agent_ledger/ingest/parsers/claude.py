"""
Claude Code JSONL parser.

Parses session logs under ``~/.claude/projects/<encoded-cwd>/``:

- ``<session-id>.jsonl`` holds the main conversation thread.
- ``agent-<id>.jsonl`` and ``<session-id>/subagents/agent-<id>.jsonl`` hold
  sub-conversations spawned through the ``Task`` tool. Their records carry
  the parent session id and ``isSidechain: true``.

Spawn correlation inputs come from the main file: a ``Task`` ``tool_use``
block is the spawn request, and the later ``user`` record whose
``toolUseResult.agentId`` names the agent is the completion. The completion's
``tool_result.tool_use_id`` (or, failing that, its ``parentUuid``) points back
at the request. Task descriptions are never used for matching; they repeat.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional
import json
import logging

from agent_ledger.ingest.discovery import SourcePattern
from agent_ledger.ingest.parsers.base import (
    MALFORMED_RECORD_ERRORS,
    AppendOnlyParser,
    as_text,
    int_or_none,
    project_from_cwd,
    record_field,
    text_or_none,
)
from agent_ledger.ingest.types import (
    Assistant,
    AuthorRole,
    EntityKind,
    MessageType,
    ParsedMessage,
    ParsedSession,
    ParsedThread,
    ParseResult,
    RawRecord,
    SourceRecord,
    SpawnLink,
    ThreadType,
    WireFormat,
    parse_timestamp,
)

logger = logging.getLogger("agent_ledger.parsers.claude")

SPAWN_TOOL_NAMES = frozenset({"Task", "Agent"})

# Recognized record kinds that carry no conversation content.
IGNORED_KINDS = frozenset({"file-history-snapshot", "queue-operation"})
MESSAGE_KINDS = frozenset({"user", "assistant", "summary", "system"})


def agent_id_from_path(path: Path) -> Optional[str]:
    """``agent-a4767a09.jsonl`` -> ``a4767a09``; ``None`` for main session files."""
    stem = path.stem
    if not stem.startswith("agent-"):
        return None
    return stem[len("agent-"):]


def session_id_from_path(path: Path) -> str:
    """Session id implied by the file location."""
    if path.parent.name == "subagents":
        return path.parent.parent.name
    return path.stem


def thread_id_for(session_id: str, agent_id: Optional[str] = None) -> str:
    if agent_id is None:
        return f"{session_id}-main"
    return f"{session_id}-agent-{agent_id}"


def decode_project_dir(path: Path) -> Optional[str]:
    """
    Best-effort decode of the encoded project folder name.

    ``-Users-test-dev-myproject`` -> ``/Users/test/dev/myproject``. Dashes
    inside real directory names are ambiguous, so ``cwd`` from the records
    is preferred whenever present.
    """
    folder = path.parent
    if folder.name == "subagents":
        folder = folder.parent.parent
    name = folder.name
    if not name.startswith("-"):
        return None
    return name.replace("-", "/")


class ClaudeCodeParser(AppendOnlyParser):
    """Parser for Claude Code session and agent logs."""

    assistant = Assistant.CLAUDE_CODE

    def __init__(self, root: Optional[Path | str] = None):
        super().__init__(root if root is not None else Path.home() / ".claude")

    def source_patterns(self) -> list[SourcePattern]:
        return [
            SourcePattern(
                pattern="projects/*/*/subagents/agent-*.jsonl",
                entity_kind=EntityKind.SESSION,
                wire_format=WireFormat.APPEND_LINES,
                description="Claude Code spawned agent logs",
            ),
            SourcePattern(
                pattern="projects/*/*.jsonl",
                entity_kind=EntityKind.SESSION,
                wire_format=WireFormat.APPEND_LINES,
                description="Claude Code session logs",
            ),
        ]

    def parse_records(
        self,
        source: SourceRecord,
        records: Iterable[RawRecord],
        state: dict[str, Any],
        observed_at: datetime,
        result: ParseResult,
    ) -> None:
        path = source.path
        agent_id = agent_id_from_path(path)
        thread_type = ThreadType.AGENT if agent_id else ThreadType.MAIN

        seq = int(state.get("seq", 0))
        session_id: Optional[str] = state.get("session_id")
        last_ts = parse_timestamp(state.get("last_ts"))
        slugs: list[str] = list(state.get("slugs", []))
        # call_id -> {"seq": spawning message seq, "uuid": record uuid}
        spawn_requests: dict[str, dict[str, Any]] = dict(state.get("spawn_requests", {}))

        first_ts: Optional[datetime] = None
        first_offset = 0
        last_activity: Optional[datetime] = None

        for record in records:
            if record.kind in IGNORED_KINDS:
                continue
            if record.kind not in MESSAGE_KINDS:
                logger.debug("%s:%s: skipping record kind %r", path, record.location.line, record.kind)
                continue
            raw = record.raw

            # Sidechain records in a main file are copies; the agent file owns them.
            if agent_id is None and raw.get("isSidechain"):
                continue

            if session_id is None:
                session_id = text_or_none(raw.get("sessionId")) or session_id_from_path(path)

            for raw_key, state_key in (("cwd", "cwd"), ("gitBranch", "git_branch"), ("version", "version")):
                if text_or_none(raw.get(raw_key)) and not state.get(state_key):
                    state[state_key] = raw[raw_key]
            model = text_or_none(record_field(record, "message", "model"))
            if model and model != "<synthetic>" and not state.get("model"):
                state["model"] = model
            slug = text_or_none(raw.get("slug"))
            if slug and slug not in slugs:
                slugs.append(slug)

            emitted_at = parse_timestamp(raw.get("timestamp")) or last_ts or observed_at
            last_ts = emitted_at

            thread_id = thread_id_for(session_id, agent_id)
            try:
                messages = self._record_to_messages(
                    record, session_id, thread_id, thread_type, seq, emitted_at, observed_at,
                )
                link = None
                if agent_id is None:
                    link = self._spawn_completion(record, session_id, thread_id, spawn_requests)
            except MALFORMED_RECORD_ERRORS as e:
                self.skip_malformed(source, record, e, result)
                continue

            if first_ts is None:
                first_ts = emitted_at
                first_offset = record.location.offset
            if messages:
                seq = messages[-1].seq
            if link is not None:
                result.spawn_links.append(link)

            for message in messages:
                if (
                    message.message_type == MessageType.TOOL_CALL
                    and message.tool_name in SPAWN_TOOL_NAMES
                    and message.call_id
                ):
                    spawn_requests[message.call_id] = {"seq": message.seq, "uuid": message.record_uuid}

            if any(m.message_type != MessageType.CONTEXT for m in messages):
                last_activity = emitted_at
            result.messages.extend(messages)

        state["seq"] = seq
        state["slugs"] = slugs
        state["spawn_requests"] = spawn_requests
        if session_id is not None:
            state["session_id"] = session_id
        if last_ts is not None:
            state["last_ts"] = last_ts.isoformat()

        if session_id is None or first_ts is None:
            return

        thread = ParsedThread(
            id=thread_id_for(session_id, agent_id),
            session_id=session_id,
            thread_type=thread_type,
            started_at=first_ts,
            last_activity_at=last_activity,
            source_path=str(path),
            source_offset=first_offset,
            spawn_id=agent_id,
            metadata={"agent_id": agent_id} if agent_id else {},
        )
        result.threads.append(thread)

        cwd = state.get("cwd")
        result.project = project_from_cwd(cwd, first_ts, last_ts)
        model = state.get("model")
        result.session = ParsedSession(
            id=session_id,
            assistant=self.assistant,
            started_at=first_ts,
            last_activity_at=last_activity,
            source_path=str(path),
            source_offset=first_offset,
            project_id=result.project.id if result.project else None,
            backing_model=f"anthropic:{model}" if model else None,
            metadata={
                "cwd": cwd,
                "project_path": decode_project_dir(path),
                "git_branch": state.get("git_branch"),
                "version": state.get("version"),
                "slugs": slugs if agent_id is None else None,
            },
        )
        if agent_id is None:
            result.plan_refs = list(slugs)

    def _spawn_completion(
        self,
        record: RawRecord,
        session_id: str,
        thread_id: str,
        spawn_requests: dict[str, dict[str, Any]],
    ) -> Optional[SpawnLink]:
        """Build a SpawnLink from a Task completion record, if this is one."""
        tool_use_result = record.raw.get("toolUseResult")
        if not isinstance(tool_use_result, dict) or not tool_use_result.get("agentId"):
            return None

        call_id = None
        for block in _content_blocks(record):
            if block.get("type") == "tool_result" and text_or_none(block.get("tool_use_id")):
                call_id = block["tool_use_id"]
                break

        request = spawn_requests.pop(call_id, None) if call_id else None
        parent_uuid = text_or_none(record.raw.get("parentUuid"))
        if request is None and parent_uuid:
            matches = [cid for cid, req in spawn_requests.items() if req.get("uuid") == parent_uuid]
            if len(matches) == 1:
                request = spawn_requests.pop(matches[0])
                call_id = call_id or matches[0]

        return SpawnLink(
            spawn_id=str(tool_use_result["agentId"]),
            session_id=session_id,
            parent_thread_id=thread_id,
            spawning_seq=request["seq"] if request else None,
            request_call_id=call_id,
            request_uuid=parent_uuid,
            location=record.location,
        )

    def _record_to_messages(
        self,
        record: RawRecord,
        session_id: str,
        thread_id: str,
        thread_type: ThreadType,
        seq: int,
        emitted_at: datetime,
        observed_at: datetime,
    ) -> list[ParsedMessage]:
        """Convert one record into zero or more messages numbered after ``seq``."""
        # In agent threads the "user" is the parent assistant, not a person.
        if thread_type == ThreadType.AGENT:
            user_role, assistant_role = AuthorRole.CALLER, AuthorRole.AGENT
        else:
            user_role, assistant_role = AuthorRole.HUMAN, AuthorRole.ASSISTANT

        raw = record.raw
        messages: list[ParsedMessage] = []

        def emit(role: AuthorRole, message_type: MessageType, **fields: Any) -> None:
            messages.append(ParsedMessage(
                session_id=session_id,
                thread_id=thread_id,
                seq=seq + len(messages) + 1,
                emitted_at=emitted_at,
                observed_at=observed_at,
                author_role=role,
                message_type=message_type,
                source_path=record.location.path,
                source_offset=record.location.offset,
                source_line=record.location.line,
                raw_data=raw,
                record_uuid=text_or_none(raw.get("uuid")),
                **fields,
            ))

        if record.kind == "summary":
            emit(AuthorRole.SYSTEM, MessageType.SUMMARY, content=as_text(raw.get("summary")), content_type="text")
            return messages

        if record.kind == "system":
            content = raw.get("content")
            emit(
                AuthorRole.SYSTEM,
                MessageType.CONTEXT,
                author_name=text_or_none(raw.get("subtype")),
                content=content if isinstance(content, str) else None,
                content_type="text",
            )
            return messages

        message = raw.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        usage = message.get("usage") if isinstance(message, dict) else None
        tokens = {}
        if record.kind == "assistant" and isinstance(usage, dict):
            tokens = {
                "tokens_in": int_or_none(usage.get("input_tokens")),
                "tokens_out": int_or_none(usage.get("output_tokens")),
            }

        is_assistant = record.kind == "assistant"
        role = assistant_role if is_assistant else user_role
        text_type = MessageType.RESPONSE if is_assistant else MessageType.PROMPT

        if isinstance(content, str):
            if content:
                emit(role, text_type, content=content, content_type="text", **tokens)
            return messages

        for block in _content_blocks(record):
            block_type = block.get("type")
            if block_type == "text":
                text = text_or_none(block.get("text")) or ""
                if text:
                    emit(role, text_type, content=text, content_type="text", **tokens)
            elif block_type == "tool_use" and is_assistant:
                emit(
                    role,
                    MessageType.TOOL_CALL,
                    tool_name=text_or_none(block.get("name")),
                    tool_input=block.get("input"),
                    call_id=text_or_none(block.get("id")),
                    **tokens,
                )
            elif block_type == "tool_result" and not is_assistant:
                emit(
                    AuthorRole.TOOL,
                    MessageType.ERROR if block.get("is_error") else MessageType.TOOL_RESULT,
                    tool_result=_stringify_tool_result(block.get("content")),
                    call_id=text_or_none(block.get("tool_use_id")),
                )
            elif block_type == "thinking":
                emit(
                    role,
                    MessageType.CONTEXT,
                    content=text_or_none(block.get("thinking")) or None,
                    content_type="text",
                    metadata={"thinking": True},
                    **tokens,
                )
            elif block_type == "image":
                source_info = block.get("source")
                media_type = None
                if isinstance(source_info, dict):
                    media_type = text_or_none(source_info.get("media_type"))
                media_type = media_type or "image/unknown"
                emit(
                    role,
                    MessageType.CONTEXT if is_assistant else MessageType.PROMPT,
                    content_type=f"{media_type};base64",
                )
            else:
                # Unknown or misplaced block: keep it, the raw record is attached.
                emit(
                    role,
                    MessageType.CONTEXT,
                    content_type=f"unknown:{block_type}",
                    **tokens,
                )

        return messages


def _content_blocks(record: RawRecord) -> list[dict[str, Any]]:
    content = record_field(record, "message", "content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _stringify_tool_result(content: Any) -> Optional[str]:
    if content is None:
        return None
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            part.get("text", "") for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        ]
        if texts and len(texts) == len(content):
            return "\n".join(texts)
    return json.dumps(content, ensure_ascii=False)
