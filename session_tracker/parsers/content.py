"""Message content variants and their text resolver.

Transcript records carry content as a plain string, a list of typed blocks,
or an object that wraps either of those. Classification happens once, and
``resolve_content`` walks the resulting variant.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Union


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class BlockListContent:
    blocks: tuple[Any, ...]


@dataclass(frozen=True)
class NestedContent:
    payload: Mapping[str, Any]


MessageContent = Union[TextContent, BlockListContent, NestedContent]


def classify_content(value: Any) -> MessageContent | None:
    if isinstance(value, str):
        return TextContent(value)
    if isinstance(value, list):
        return BlockListContent(tuple(value))
    if isinstance(value, Mapping):
        return NestedContent(value)
    return None


def resolve_content(content: MessageContent | None) -> str:
    if content is None:
        return ""
    if isinstance(content, TextContent):
        return content.text
    if isinstance(content, BlockListContent):
        chunks: list[str] = []
        for block in content.blocks:
            if isinstance(block, str):
                text = block
            elif isinstance(block, Mapping) and block.get("type") == "text":
                text = block.get("text") if isinstance(block.get("text"), str) else ""
            else:
                continue
            if text:
                chunks.append(text)
        return "\n".join(chunks)
    payload = content.payload
    if "content" in payload:
        return resolve_content(classify_content(payload["content"]))
    text = payload.get("text")
    return text if isinstance(text, str) else ""


def extract_text(value: Any) -> str:
    """Flatten any message/content value into display text."""
    return resolve_content(classify_content(value))
