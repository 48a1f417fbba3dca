"""Parse JSONL transcript files into ParsedSession models.

Each line is decoded independently. Malformed lines are skipped, so a file
that is being appended to while it is read still yields every complete
record before the partial one.
"""
from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Mapping

from session_tracker import config
from session_tracker.date_utils import parse_datetime
from session_tracker.models import (
    DetailedToolUsage,
    ParsedSession,
    SessionMessage,
    TokenStats,
)
from session_tracker.parsers.content import extract_text
from session_tracker.parsers.tool_names import resolve_tool_names

logger = logging.getLogger("tracker.parser")

_KNOWN_ROLES = {"user", "assistant", "system", "tool", "tool_result", "thinking"}


def compute_entry_hash(message_id: str | None, request_id: str | None) -> str:
    raw = f"{message_id or ''}|{request_id or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def _as_float(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def _mapping(value: Any) -> Mapping[str, Any] | None:
    return value if isinstance(value, Mapping) else None


def extract_message_id(entry: Mapping[str, Any]) -> str | None:
    message = _mapping(entry.get("message"))
    if message and _as_str(message.get("id")):
        return message["id"]
    return _as_str(entry.get("id"))


def extract_request_id(entry: Mapping[str, Any]) -> str | None:
    return _as_str(entry.get("requestId")) or _as_str(entry.get("request_id"))


def _usage_of(entry: Mapping[str, Any]) -> Mapping[str, Any] | None:
    usage = _mapping(entry.get("usage"))
    if usage is not None:
        return usage
    message = _mapping(entry.get("message"))
    return _mapping(message.get("usage")) if message else None


def _model_of(entry: Mapping[str, Any]) -> str | None:
    model = _as_str(entry.get("model"))
    if model:
        return model
    message = _mapping(entry.get("message"))
    return _as_str(message.get("model")) if message else None


def _usage_tokens(usage: Mapping[str, Any]) -> TokenStats:
    return TokenStats(
        inputTokens=_as_int(usage.get("input_tokens")),
        outputTokens=_as_int(usage.get("output_tokens")),
        cacheWriteTokens=_as_int(usage.get("cache_creation_input_tokens")),
        cacheReadTokens=_as_int(usage.get("cache_read_input_tokens")),
    )


def _tool_result_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for block in content:
            if isinstance(block, str):
                chunks.append(block)
            elif isinstance(block, Mapping):
                text = block.get("text")
                if isinstance(text, str) and text.strip():
                    chunks.append(text)
                elif isinstance(block.get("content"), str):
                    chunks.append(block["content"])
        return "\n".join(chunks)
    if content is None:
        return ""
    return json.dumps(content, ensure_ascii=False)


def _dump(value: Any, indent: int | None = None) -> str:
    if indent is None:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return json.dumps(value, ensure_ascii=False, indent=indent)


def parse_entry(entry: Any) -> SessionMessage | None:
    """Convert one decoded record into a message, or None when it has no content."""
    if not isinstance(entry, Mapping):
        return None

    declared = _as_str(entry.get("type")) or _as_str(entry.get("role"))
    role = declared if declared in _KNOWN_ROLES else "unknown"

    usage = _usage_of(entry)
    token_count = 0
    if usage:
        token_count = _as_int(usage.get("input_tokens")) + _as_int(usage.get("output_tokens"))

    entry_type = _as_str(entry.get("type"))
    thinking = entry.get("thinking")
    tool_use = _mapping(entry.get("tool_use"))
    tool_result = _mapping(entry.get("tool_result"))
    entry_content = entry.get("content")

    content = ""
    if entry_type == "thinking" or thinking is not None:
        role = "thinking"
        if isinstance(thinking, str):
            content = thinking
        elif isinstance(entry_content, str):
            content = entry_content
    elif entry_type == "tool_use" or tool_use is not None:
        role = "tool"
        tool = tool_use if tool_use is not None else entry
        tool_name = _as_str(tool.get("name")) or "unknown"
        content = f"[Tool: {tool_name}]\n{_dump(tool.get('input') or {}, indent=2)}"
    elif entry_type == "tool_result" or tool_result is not None:
        role = "tool_result"
        result = tool_result if tool_result is not None else entry
        result_content = result.get("content")
        if isinstance(result_content, str):
            content = result_content
        else:
            content = _dump(result_content or dict(result), indent=2)
    elif "message" in entry:
        content = extract_text(entry["message"])
    elif entry_content is not None:
        content = entry_content if isinstance(entry_content, str) else _dump(entry_content)

    if not content.strip():
        return None

    return SessionMessage(
        role=role,
        content=content,
        timestamp=_as_str(entry.get("timestamp")),
        tokenCount=token_count,
    )


def _tool_calls(entry: Mapping[str, Any]) -> list[tuple[str, Any, str | None]]:
    """(name, input, call id) for every tool call a record carries, in order."""
    calls: list[tuple[str, Any, str | None]] = []
    tool_use = _mapping(entry.get("tool_use"))
    if entry.get("type") == "tool_use" or tool_use is not None:
        tool = tool_use if tool_use is not None else entry
        name = _as_str(tool.get("name"))
        if name:
            calls.append((name, tool.get("input"), _as_str(tool.get("id"))))
    message = _mapping(entry.get("message"))
    blocks = message.get("content") if message else None
    if isinstance(blocks, list):
        for block in blocks:
            if isinstance(block, Mapping) and block.get("type") == "tool_use" and _as_str(block.get("name")):
                calls.append((block["name"], block.get("input"), _as_str(block.get("id"))))
    return calls


def _tool_results(entry: Mapping[str, Any]) -> dict[str, tuple[str, bool]]:
    """call id -> (result text, is_error) for every tool result a record carries."""
    results: dict[str, tuple[str, bool]] = {}

    def _add(payload: Mapping[str, Any]) -> None:
        call_id = _as_str(payload.get("tool_use_id"))
        if call_id and call_id not in results:
            results[call_id] = (_tool_result_to_text(payload.get("content")), bool(payload.get("is_error")))

    tool_result = _mapping(entry.get("tool_result"))
    if tool_result is not None:
        _add(tool_result)
    elif entry.get("type") == "tool_result":
        _add(entry)
    for container in (entry.get("content"), (_mapping(entry.get("message")) or {}).get("content")):
        if isinstance(container, list):
            for block in container:
                if isinstance(block, Mapping) and block.get("type") == "tool_result":
                    _add(block)
    return results


def _apply_result(entry: DetailedToolUsage, result: tuple[str, bool]) -> None:
    text, is_error = result
    entry.toolResultPreview = text[: config.RESULT_PREVIEW_CHARS]
    entry.success = not is_error


def parse_transcript_text(text: str, source: str = "<memory>") -> ParsedSession:
    """Parse transcript contents. Never raises."""
    parsed = ParsedSession()
    tool_usage: dict[str, int] = {}
    detailed: list[DetailedToolUsage] = []
    pending_results: dict[str, list[DetailedToolUsage]] = {}
    seen_keys: set[str] = set()
    totals = TokenStats()
    cost_usd = 0.0
    model: str | None = None

    for line_no, raw_line in enumerate(text.split("\n")):
        line = raw_line.strip()
        if not line:
            continue
        parsed.linesTotal += 1
        try:
            entry = json.loads(line)
        except ValueError:
            parsed.linesSkipped += 1
            logger.debug("Skipping malformed line %d in %s", line_no + 1, source)
            continue
        if not isinstance(entry, Mapping):
            parsed.linesSkipped += 1
            logger.debug("Skipping non-object line %d in %s", line_no + 1, source)
            continue

        try:
            message = parse_entry(entry)
            if message is not None:
                parsed.messages.append(message)

            # Results for calls made in earlier records.
            results = _tool_results(entry)
            for call_id, result in results.items():
                for waiting in pending_results.pop(call_id, []):
                    _apply_result(waiting, result)

            calls = _tool_calls(entry)
            for name, tool_input, _call_id in calls:
                for resolved in resolve_tool_names(name, _mapping(tool_input)):
                    tool_usage[resolved] = tool_usage.get(resolved, 0) + 1

            usage = _usage_of(entry)
            if usage is None:
                continue

            message_id = extract_message_id(entry)
            request_id = extract_request_id(entry)
            entry_hash = compute_entry_hash(message_id, request_id)
            is_duplicate = entry_hash in seen_keys
            seen_keys.add(entry_hash)

            tokens = _usage_tokens(usage)
            record_cost = _as_float(entry.get("costUSD"))
            record_model = _model_of(entry)
            if not is_duplicate:
                totals.add(tokens)
                cost_usd += record_cost
                if model is None and record_model:
                    model = record_model

            for tool_index, (name, tool_input, call_id) in enumerate(calls):
                item = DetailedToolUsage(
                    toolName=name,
                    toolUseId=call_id,
                    toolInput=_dump(tool_input) if tool_input is not None else None,
                    inputTokens=tokens.inputTokens,
                    outputTokens=tokens.outputTokens,
                    cacheWriteTokens=tokens.cacheWriteTokens,
                    cacheReadTokens=tokens.cacheReadTokens,
                    tokenCost=tokens.total,
                    costUsd=record_cost,
                    messageId=message_id,
                    requestId=request_id,
                    entryHash=entry_hash,
                    toolIndex=tool_index,
                    model=record_model,
                    timestamp=_as_str(entry.get("timestamp")),
                    isDuplicate=is_duplicate,
                )
                if call_id and call_id in results:
                    _apply_result(item, results[call_id])
                elif call_id:
                    pending_results.setdefault(call_id, []).append(item)
                detailed.append(item)
        except Exception:  # noqa: BLE001
            parsed.linesSkipped += 1
            logger.debug("Skipping unprocessable record on line %d in %s", line_no + 1, source, exc_info=True)

    parsed.tokenStats = totals
    parsed.costUsd = cost_usd
    parsed.model = model
    parsed.toolUsage = tool_usage
    parsed.detailedToolUsage = detailed

    stamped: list[tuple[Any, str]] = []
    for msg in parsed.messages:
        when = parse_datetime(msg.timestamp) if msg.timestamp else None
        if when is not None:
            stamped.append((when, msg.timestamp))
    if stamped:
        parsed.startTime = min(stamped)[1]
        parsed.endTime = max(stamped)[1]
    return parsed


def parse_session_file(path: Path) -> ParsedSession:
    """Read and parse one transcript file. A read failure yields an empty result."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.error("Failed to read transcript %s: %s", path, exc)
        return ParsedSession()
    return parse_transcript_text(text, source=str(path))
