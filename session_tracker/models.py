"""Pydantic models shared by the engine, the store and the HTTP surface."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Literal, Optional, Generic, TypeVar

T = TypeVar("T")

MessageRole = Literal["user", "assistant", "system", "tool", "tool_result", "thinking", "unknown"]
SessionKind = Literal["user", "subagent"]


class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    total: int
    offset: int
    limit: int

# ── Scan results ────────────────────────────────────────────────────

class SessionFile(BaseModel):
    path: str
    modifiedTime: float


class RefreshResult(BaseModel):
    newCount: int = 0
    updatedCount: int = 0
    recoveredCount: int = 0


class ScanResult(BaseModel):
    status: Literal["complete", "no_sessions", "error"] = "complete"
    total: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    durationMs: int = 0

# ── Parsed transcript ───────────────────────────────────────────────

class TokenStats(BaseModel):
    inputTokens: int = 0
    outputTokens: int = 0
    cacheWriteTokens: int = 0
    cacheReadTokens: int = 0

    @property
    def total(self) -> int:
        return self.inputTokens + self.outputTokens + self.cacheWriteTokens + self.cacheReadTokens

    def add(self, other: TokenStats) -> None:
        self.inputTokens += other.inputTokens
        self.outputTokens += other.outputTokens
        self.cacheWriteTokens += other.cacheWriteTokens
        self.cacheReadTokens += other.cacheReadTokens


class SessionMessage(BaseModel):
    role: MessageRole = "unknown"
    content: str = ""
    timestamp: Optional[str] = None
    tokenCount: int = 0


class DetailedToolUsage(BaseModel):
    toolName: str
    toolUseId: Optional[str] = None
    toolInput: Optional[str] = None
    toolResultPreview: Optional[str] = None
    success: bool = True
    inputTokens: int = 0
    outputTokens: int = 0
    cacheWriteTokens: int = 0
    cacheReadTokens: int = 0
    tokenCost: int = 0
    costUsd: float = 0.0
    messageId: Optional[str] = None
    requestId: Optional[str] = None
    entryHash: str = ""
    toolIndex: int = 0
    model: Optional[str] = None
    timestamp: Optional[str] = None
    isDuplicate: bool = False


class ToolUsageCount(BaseModel):
    name: str
    count: int = 0


class ParsedSession(BaseModel):
    messages: list[SessionMessage] = Field(default_factory=list)
    tokenStats: TokenStats = Field(default_factory=TokenStats)
    costUsd: float = 0.0
    model: Optional[str] = None
    toolUsage: dict[str, int] = Field(default_factory=dict)
    detailedToolUsage: list[DetailedToolUsage] = Field(default_factory=list)
    startTime: Optional[str] = None
    endTime: Optional[str] = None
    linesTotal: int = 0
    linesSkipped: int = 0

# ── Persisted session ───────────────────────────────────────────────

class Session(BaseModel):
    id: str
    projectName: str = ""
    filePath: str = ""
    sessionKind: SessionKind = "user"
    startTime: Optional[str] = None
    endTime: Optional[str] = None
    messageCount: int = 0
    inputTokens: int = 0
    outputTokens: int = 0
    cacheWriteTokens: int = 0
    cacheReadTokens: int = 0
    tokenCount: int = 0
    costUsd: float = 0.0
    model: Optional[str] = None
    status: str = "active"
    favorite: bool = False
    archived: bool = False
    fileModifiedTime: float = 0.0
    updatedAt: str = ""


class ModelPricing(BaseModel):
    """USD per million tokens."""
    inputRate: float
    outputRate: float
    cacheWriteRate: Optional[float] = None
    cacheReadRate: Optional[float] = None
    effectiveDate: Optional[str] = None

# ── Notification events ─────────────────────────────────────────────

class SessionDetectedEvent(BaseModel):
    type: Literal["session_detected"] = "session_detected"
    path: str
    projectName: str
    sessionId: str
    sessionKind: SessionKind = "user"


class SessionUpdatedEvent(BaseModel):
    type: Literal["session_updated"] = "session_updated"
    path: str
    sessionId: str
    messages: list[SessionMessage] = Field(default_factory=list)
    isLive: bool = True


class ScanStatusEvent(BaseModel):
    type: Literal["scan_status"] = "scan_status"
    state: Literal["scanning", "complete", "error"]
    message: str = ""
    current: int = 0
    total: int = 0
