"""
Codex CLI rollout parser.

Rollouts live at ``~/.codex/sessions/YYYY/MM/DD/rollout-<timestamp>-<uuid>.jsonl``.
Each line is ``{"timestamp", "type", "payload"}`` where ``type`` is one of
``session_meta``, ``turn_context``, ``response_item`` or ``event_msg``.

``event_msg`` mostly duplicates ``response_item`` content for the TUI, so
``user_message``/``agent_message``/``agent_reasoning`` are dropped and
``token_count`` is folded into the next assistant response.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional
import json
import logging
import re

from agent_ledger.ingest.discovery import SourcePattern
from agent_ledger.ingest.parsers.base import (
    MALFORMED_RECORD_ERRORS,
    AppendOnlyParser,
    int_or_none,
    project_from_cwd,
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
    ThreadType,
    WireFormat,
    parse_timestamp,
)

logger = logging.getLogger("agent_ledger.parsers.codex")

DUPLICATE_EVENTS = frozenset({"user_message", "agent_message", "agent_reasoning"})

# Prefixes of user-role text that Codex injects itself.
INJECTED_CONTEXT_PREFIXES = (
    "<environment_context>",
    "<user_shell_command>",
    "<INSTRUCTIONS>",
    "<user_instructions>",
    "<system",
    "# AGENTS.md instructions for",
)

_UUID_TAIL = re.compile(
    r"([0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})$"
)


def session_id_from_path(path: Path) -> Optional[str]:
    """``rollout-2025-12-04T21-56-52-019aeb2a-...-fb93a5.jsonl`` -> trailing UUID."""
    match = _UUID_TAIL.search(path.stem)
    return match.group(1) if match else None


def is_injected_context(text: str) -> bool:
    return text.strip().startswith(INJECTED_CONTEXT_PREFIXES)


class CodexParser(AppendOnlyParser):
    """Parser for Codex CLI rollout files."""

    assistant = Assistant.CODEX

    def __init__(self, root: Optional[Path | str] = None):
        super().__init__(root if root is not None else Path.home() / ".codex")

    def source_patterns(self) -> list[SourcePattern]:
        return [
            SourcePattern(
                pattern="sessions/*/*/*/rollout-*.jsonl",
                entity_kind=EntityKind.SESSION,
                wire_format=WireFormat.APPEND_LINES,
                description="Codex CLI session logs",
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
        seq = int(state.get("seq", 0))
        session_id: Optional[str] = state.get("session_id") or session_id_from_path(path)
        last_ts = parse_timestamp(state.get("last_ts"))
        last_tokens: Optional[dict] = state.get("last_tokens")

        first_ts: Optional[datetime] = None
        first_offset = 0
        last_activity: Optional[datetime] = None

        for record in records:
            raw = record.raw
            payload = raw.get("payload")
            if not isinstance(payload, dict):
                payload = {}

            emitted_at = parse_timestamp(raw.get("timestamp")) or last_ts or observed_at
            last_ts = emitted_at

            if record.kind == "session_meta":
                if text_or_none(payload.get("id")):
                    session_id = payload["id"]
                if text_or_none(payload.get("cwd")) and not state.get("cwd"):
                    state["cwd"] = payload["cwd"]
                if payload.get("git") and not state.get("git"):
                    state["git"] = payload["git"]
                meta = {
                    k: payload.get(k)
                    for k in ("originator", "cli_version", "source", "model_provider")
                    if payload.get(k) is not None
                }
                state.setdefault("meta", {}).update(meta)
            elif record.kind == "turn_context":
                if text_or_none(payload.get("model")) and not state.get("model"):
                    state["model"] = payload["model"]
                if text_or_none(payload.get("cwd")):
                    state["cwd"] = payload["cwd"]
            elif record.kind not in ("response_item", "event_msg"):
                logger.debug("%s:%s: skipping record kind %r", path, record.location.line, record.kind)
                continue

            if session_id is None:
                # No id in the filename and no session_meta yet; nothing to attach to.
                result.warnings.append(
                    f"{path}:{record.location.line}: record before any session id, skipped"
                )
                continue

            if first_ts is None:
                first_ts = emitted_at
                first_offset = record.location.offset

            if record.kind == "event_msg" and payload.get("type") == "token_count":
                info = payload.get("info")
                if isinstance(info, dict) and isinstance(info.get("last_token_usage"), dict):
                    last_tokens = info["last_token_usage"]
                continue

            try:
                messages = self._record_to_messages(
                    record, payload, session_id, seq, emitted_at, observed_at, state, last_tokens,
                )
            except MALFORMED_RECORD_ERRORS as e:
                self.skip_malformed(source, record, e, result)
                continue
            if not messages:
                continue
            seq = messages[-1].seq
            if any(m.message_type != MessageType.CONTEXT for m in messages):
                last_activity = emitted_at
            if any(m.author_role == AuthorRole.ASSISTANT and m.tokens_in is not None for m in messages):
                last_tokens = None
            result.messages.extend(messages)

        state["seq"] = seq
        state["last_tokens"] = last_tokens
        if session_id is not None:
            state["session_id"] = session_id
        if last_ts is not None:
            state["last_ts"] = last_ts.isoformat()

        if session_id is None or first_ts is None:
            return

        result.threads.append(ParsedThread(
            id=f"{session_id}-main",
            session_id=session_id,
            thread_type=ThreadType.MAIN,
            started_at=first_ts,
            last_activity_at=last_activity,
            source_path=str(path),
            source_offset=first_offset,
        ))

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
            backing_model=f"openai:{model}" if model else None,
            metadata={"cwd": cwd, "git": state.get("git"), **state.get("meta", {})},
        )

    def _record_to_messages(
        self,
        record: RawRecord,
        payload: dict[str, Any],
        session_id: str,
        seq: int,
        emitted_at: datetime,
        observed_at: datetime,
        state: dict[str, Any],
        last_tokens: Optional[dict],
    ) -> list[ParsedMessage]:
        messages: list[ParsedMessage] = []

        def emit(role: AuthorRole, message_type: MessageType, **fields: Any) -> None:
            messages.append(ParsedMessage(
                session_id=session_id,
                thread_id=f"{session_id}-main",
                seq=seq + len(messages) + 1,
                emitted_at=emitted_at,
                observed_at=observed_at,
                author_role=role,
                message_type=message_type,
                source_path=record.location.path,
                source_offset=record.location.offset,
                source_line=record.location.line,
                raw_data=record.raw,
                **fields,
            ))

        if record.kind in ("session_meta", "turn_context"):
            return messages

        if record.kind == "event_msg":
            msg_type = text_or_none(payload.get("type")) or "unknown"
            if msg_type not in DUPLICATE_EVENTS:
                emit(
                    AuthorRole.SYSTEM,
                    MessageType.CONTEXT,
                    author_name=msg_type,
                    content_type=f"unknown:{msg_type}",
                )
            return messages

        item_type = text_or_none(payload.get("type")) or "unknown"
        call_id = text_or_none(payload.get("call_id"))

        if item_type == "message":
            role = payload.get("role")
            for block in payload.get("content") or []:
                if not isinstance(block, dict) or block.get("type") not in ("input_text", "output_text", "text"):
                    continue
                text = text_or_none(block.get("text")) or ""
                if not text:
                    continue
                tokens = {}
                if role == "assistant":
                    author, message_type = AuthorRole.ASSISTANT, MessageType.RESPONSE
                    if last_tokens:
                        tokens = {
                            "tokens_in": int_or_none(last_tokens.get("input_tokens")),
                            "tokens_out": int_or_none(last_tokens.get("output_tokens")),
                        }
                elif role == "user" and is_injected_context(text):
                    author, message_type = AuthorRole.CALLER, MessageType.CONTEXT
                elif role == "user" and not state.get("seen_first_prompt"):
                    state["seen_first_prompt"] = True
                    author, message_type = AuthorRole.CALLER, MessageType.PROMPT
                elif role == "user":
                    author, message_type = AuthorRole.HUMAN, MessageType.PROMPT
                else:
                    author, message_type = AuthorRole.SYSTEM, MessageType.CONTEXT
                emit(author, message_type, content=text, content_type="text", **tokens)

        elif item_type == "function_call":
            emit(
                AuthorRole.ASSISTANT,
                MessageType.TOOL_CALL,
                tool_name=text_or_none(payload.get("name")),
                tool_input=_decode_arguments(payload.get("arguments")),
                call_id=call_id,
            )
        elif item_type == "custom_tool_call":
            emit(
                AuthorRole.ASSISTANT,
                MessageType.TOOL_CALL,
                tool_name=text_or_none(payload.get("name")),
                tool_input={"input": payload.get("input")},
                call_id=call_id,
                metadata={"custom_tool": True},
            )
        elif item_type in ("function_call_output", "custom_tool_call_output"):
            output = payload.get("output")
            emit(
                AuthorRole.TOOL,
                MessageType.TOOL_RESULT,
                tool_result=output if isinstance(output, str) or output is None else json.dumps(output),
                call_id=call_id,
                metadata={"custom_tool": True} if item_type.startswith("custom") else {},
            )
        elif item_type == "reasoning":
            summary = payload.get("summary")
            summary_text = None
            if isinstance(summary, list) and summary and isinstance(summary[0], dict):
                summary_text = text_or_none(summary[0].get("text"))
            encrypted = bool(payload.get("encrypted_content"))
            parts = [p for p in (summary_text, "[encrypted reasoning]" if encrypted else None) if p]
            emit(
                AuthorRole.ASSISTANT,
                MessageType.CONTEXT,
                content="\n".join(parts) or None,
                content_type="text",
                metadata={"reasoning": True, "encrypted": encrypted},
            )
        elif item_type == "ghost_snapshot":
            commit = payload.get("ghost_commit") or {}
            commit_id = str(commit.get("id") or "unknown") if isinstance(commit, dict) else "unknown"
            emit(
                AuthorRole.SYSTEM,
                MessageType.CONTEXT,
                author_name="snapshot",
                content=f"git checkpoint: {commit_id[:8]}",
                content_type="text",
                metadata={"git_snapshot": commit},
            )
        else:
            emit(
                AuthorRole.SYSTEM,
                MessageType.CONTEXT,
                author_name=item_type,
                content_type=f"unknown:{item_type}",
            )

        return messages


def _decode_arguments(arguments: Any) -> Any:
    if not isinstance(arguments, str):
        return arguments
    try:
        return json.loads(arguments)
    except json.JSONDecodeError:
        return arguments
