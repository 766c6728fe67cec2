"""Pydantic models matching the frontend TypeScript types."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Literal, Optional, Generic, TypeVar

T = TypeVar("T")

AgentType = Literal["claude", "codex", "gemini", "unknown"]
WorkUnitConfidence = Literal["high", "medium", "low"]
CorrelationReason = Literal[
    "project_path_match",
    "file_overlap",
    "time_proximity",
    "cwd_match",
    "manual_override",
]

AGENT_TYPES: tuple[str, ...] = ("claude", "codex", "gemini", "unknown")
CONFIDENCE_LEVELS: tuple[str, ...] = ("high", "medium", "low")
# Canonical order used whenever a reason set is serialized.
CORRELATION_REASONS: tuple[str, ...] = (
    "project_path_match",
    "file_overlap",
    "time_proximity",
    "cwd_match",
    "manual_override",
)


def normalize_agent(value: str | None) -> str:
    token = (value or "").strip().lower()
    return token if token in AGENT_TYPES else "unknown"


def normalize_reasons(values) -> list[str]:
    """Return the known reasons in canonical order, without duplicates."""
    seen = {str(v).strip().lower() for v in (values or []) if str(v).strip()}
    return [reason for reason in CORRELATION_REASONS if reason in seen]


class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    total: int
    offset: int
    limit: int

# ── Session-related models ──────────────────────────────────────────

class Session(BaseModel):
    """Session metadata as supplied by the session store."""
    sessionId: str
    agent: AgentType = "unknown"
    model: Optional[str] = None
    projectPath: str = ""
    cwd: str = ""
    startTime: str
    endTime: Optional[str] = None
    frameCount: int = Field(default=0, ge=0)
    filesTouched: list[str] = Field(default_factory=list)
    firstUserMessage: Optional[str] = None


# ── Work unit models ───────────────────────────────────────────────

class WorkUnitSession(BaseModel):
    sessionId: str
    agent: AgentType = "unknown"
    model: Optional[str] = None
    correlationScore: float = Field(default=0.0, ge=0.0, le=1.0)
    joinReason: list[CorrelationReason] = Field(min_length=1)
    startTime: str
    endTime: Optional[str] = None
    duration: Optional[int] = None  # seconds
    frameCount: int = 0
    firstUserMessage: Optional[str] = None

    @property
    def pinned(self) -> bool:
        return "manual_override" in self.joinReason


class WorkUnit(BaseModel):
    id: str
    name: str
    projectPath: str = ""
    sessions: list[WorkUnitSession] = Field(min_length=1)
    agents: list[AgentType] = Field(default_factory=list)
    confidence: WorkUnitConfidence = "low"
    startTime: str = ""
    endTime: str = ""
    totalDuration: int = 0
    totalFrames: int = 0
    filesTouched: list[str] = Field(default_factory=list)
    createdAt: str = ""
    updatedAt: str = ""


class WorkUnitListResponse(BaseModel):
    workUnits: list[WorkUnit]
    total: int
    offset: int
    limit: int
    ungroupedCount: Optional[int] = None


class WorkUnitDetailsResponse(BaseModel):
    workUnit: WorkUnit
    sessions: list[WorkUnitSession]


class WorkUnitSessionPage(BaseModel):
    sessions: list[WorkUnitSession]
    total: int
    offset: int
    limit: int


class SessionWorkUnitResponse(BaseModel):
    workUnit: WorkUnit


class WorkUnitStats(BaseModel):
    total: int = 0
    byConfidence: dict[str, int] = Field(
        default_factory=lambda: {level: 0 for level in CONFIDENCE_LEVELS}
    )
    byAgent: dict[str, int] = Field(default_factory=dict)
    ungroupedSessions: int = 0


class RecomputeRequest(BaseModel):
    force: bool = False


class RecomputeResponse(BaseModel):
    success: bool = True
    skipped: bool = False
    workUnitsCreated: int = 0
    workUnitsUpdated: int = 0
    workUnitsDeleted: int = 0
    sessionsProcessed: int = 0
    duration: int = 0  # ms


class WorkUnitOverrideRequest(BaseModel):
    action: Literal["add", "remove"]
    sessionId: str = Field(..., min_length=1)


class WorkUnitCreateRequest(BaseModel):
    sessionId: str = Field(..., min_length=1)


class WorkUnitOverrideResponse(BaseModel):
    success: bool = True
    workUnit: Optional[WorkUnit] = None
    message: str = ""


class RecomputeStatus(BaseModel):
    running: bool = False
    committing: bool = False
    lastRun: Optional[dict] = None


class RecomputeAbortResponse(BaseModel):
    aborted: bool = False
    message: str = ""
