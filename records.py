"""Unified session record produced by both scanners."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from usage import TokenUsage, blended_token_total
from utils import format_relative_time, iso_utc

SOURCE_CODEX = "codex"
SOURCE_CLAUDE = "claude-code"

# Branch glyphs for fork groups.
BRANCH_NONE = " "
BRANCH_BASE = "┴"
BRANCH_FIRST = "┌"
BRANCH_MID = "├"


@dataclass(slots=True)
class SessionRecord:
    id: str
    source: str
    path: str
    resume_target: str
    timestamp: datetime
    preview: str | None
    token_usage: TokenUsage
    model_usage: dict[str, TokenUsage]
    fork_signature: str | None = None
    model: str | None = None
    message_count: int = 0
    meta: dict[str, Any] | None = None
    head: list[Any] = field(default_factory=list)
    is_fork: bool = False
    branch_marker: str = BRANCH_NONE
    cost_usd: float = 0.0
    timestamp_utc: str = ""
    relative_time: str = ""

    def __post_init__(self) -> None:
        if not self.timestamp_utc:
            self.timestamp_utc = iso_utc(self.timestamp)
        if not self.relative_time:
            self.relative_time = format_relative_time(self.timestamp)

    @property
    def blended_tokens(self) -> int:
        return blended_token_total(self.token_usage)

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "path": self.path,
            "resume_target": self.resume_target,
            "timestamp": self.timestamp_utc,
            "relative_time": self.relative_time,
            "preview": self.preview,
            "model": self.model,
            "is_fork": self.is_fork,
            "branch_marker": self.branch_marker,
            "fork_signature": self.fork_signature,
            "message_count": self.message_count,
            "token_usage": self.token_usage.to_json(),
            "blended_tokens": self.blended_tokens,
            "model_usage": {m: u.to_json() for m, u in self.model_usage.items()},
            "cost_usd": self.cost_usd,
        }


@dataclass(slots=True)
class SessionsWithTotals:
    sessions: list[SessionRecord] = field(default_factory=list)
    total_blended_tokens: int = 0
    total_cost_usd: float = 0.0

    def to_json(self) -> dict[str, Any]:
        return {
            "sessions": [s.to_json() for s in self.sessions],
            "total_blended_tokens": self.total_blended_tokens,
            "total_cost_usd": self.total_cost_usd,
        }
