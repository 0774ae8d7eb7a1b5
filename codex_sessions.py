"""Codex CLI session scanner.

Rollout logs live under ``$CODEX_HOME/sessions/YYYY/MM/DD/`` as
``rollout-<timestamp>-<uuid>.jsonl``. Every line is one JSON record tagged by
``type`` (and ``payload.type`` for events).
"""

import json
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

import config
from records import SOURCE_CODEX, SessionRecord
from usage import (
    TokenUsage,
    UsageAccumulator,
    normalize_codex_usage,
    subtract_usage,
    to_delta,
)
from utils import as_non_empty_str, collapse_whitespace, parse_ts, summarize

ROLLOUT_FILE_RE = re.compile(
    r"^rollout-(\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2})-([0-9a-fA-F-]{36})\.jsonl$"
)
FILENAME_TS_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})T(\d{2})[:\-](\d{2})[:\-](\d{2})Z?$")

# Older rollouts carry no turn_context; they were all produced by this model.
LEGACY_FALLBACK_MODEL = "gpt-5-codex"

# Record kinds
KIND_META = "session_meta"
KIND_USER = "user_message"
KIND_TURN_CONTEXT = "turn_context"
KIND_TOKEN_COUNT = "token_count"
KIND_OTHER = "other"


@dataclass(slots=True)
class RolloutFile:
    path: Path
    id: str
    timestamp: datetime | None


@dataclass(slots=True)
class RolloutSummary:
    head: list[Any] = field(default_factory=list)
    meta: dict[str, Any] | None = None
    first_user_message: str | None = None
    usage: UsageAccumulator = field(default_factory=UsageAccumulator)
    message_count: int = 0


def parse_filename_ts(value: str | None) -> datetime | None:
    """Parse ``2025-01-03T12-00-00`` (or with colons) into an aware UTC datetime.

    Codex names rollouts after the local wall clock, so a bare stamp is read
    in the local timezone. A trailing ``Z`` marks it as UTC already.
    """
    if not value:
        return None
    value = value.strip()
    match = FILENAME_TS_RE.match(value)
    if not match:
        return None
    day, hh, mm, ss = match.groups()
    try:
        parsed = datetime.fromisoformat(f"{day}T{hh}:{mm}:{ss}")
    except ValueError:
        return None
    if value.endswith("Z"):
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def iter_dirs_desc(base: Path) -> list[Path]:
    """Numeric subdirectories (years, months, days), largest first."""
    dirs: list[tuple[int, Path]] = []
    for entry in base.iterdir():
        if not entry.is_dir():
            continue
        try:
            key = int(entry.name)
        except ValueError:
            continue
        dirs.append((key, entry))
    dirs.sort(key=lambda x: x[0], reverse=True)
    return [p for _, p in dirs]


def iter_rollout_files(day_dir: Path) -> list[RolloutFile]:
    files: list[RolloutFile] = []
    for entry in day_dir.iterdir():
        if not entry.is_file():
            continue
        match = ROLLOUT_FILE_RE.match(entry.name)
        if not match:
            continue
        ts_raw, file_id = match.groups()
        files.append(RolloutFile(path=entry, id=file_id, timestamp=parse_filename_ts(ts_raw)))

    min_ts = datetime.min.replace(tzinfo=UTC)
    files.sort(key=lambda f: (f.timestamp or min_ts, f.id), reverse=True)
    return files


def classify(obj: Any) -> str:
    if not isinstance(obj, dict):
        return KIND_OTHER
    typ = obj.get("type")
    payload = obj.get("payload")
    if typ == "session_meta":
        return KIND_META if isinstance(payload, dict) else KIND_OTHER
    if typ == "turn_context":
        return KIND_TURN_CONTEXT
    if typ == "event_msg" and isinstance(payload, dict):
        ptype = payload.get("type")
        if ptype == "user_message":
            return KIND_USER
        if ptype == "token_count":
            return KIND_TOKEN_COUNT
    return KIND_OTHER


def is_message_event(obj: Any) -> bool:
    if not isinstance(obj, dict) or obj.get("type") != "event_msg":
        return False
    payload = obj.get("payload")
    if not isinstance(payload, dict):
        return False
    ptype = payload.get("type")
    return isinstance(ptype, str) and "message" in ptype.lower()


def _model_from_record(record: dict[str, Any]) -> str | None:
    for candidate in (record.get("model"), record.get("model_name")):
        model = as_non_empty_str(candidate)
        if model:
            return model
    metadata = record.get("metadata")
    if isinstance(metadata, dict):
        return as_non_empty_str(metadata.get("model"))
    return None


def extract_model(payload: Any) -> str | None:
    """Explicit model on a token_count payload or its ``info`` block."""
    if not isinstance(payload, dict):
        return None
    model = _model_from_record(payload)
    if model:
        return model
    info = payload.get("info")
    if isinstance(info, dict):
        return _model_from_record(info)
    return None


def read_rollout(path: Path, head_limit: int) -> RolloutSummary:
    """Stream one rollout file into a summary.

    Only ``head_limit`` parsed records are kept verbatim; everything else is
    folded into the usage accumulator line by line.
    """
    summary = RolloutSummary()
    previous_totals: TokenUsage | None = None
    current_model: str | None = None

    with path.open("r", encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                continue

            if len(summary.head) < head_limit:
                summary.head.append(obj)

            kind = classify(obj)

            if kind == KIND_META and summary.meta is None:
                summary.meta = obj["payload"]

            if kind == KIND_USER and summary.first_user_message is None:
                message = obj["payload"].get("message")
                if isinstance(message, str) and message.strip():
                    summary.first_user_message = message

            if is_message_event(obj):
                summary.message_count += 1

            if kind == KIND_TURN_CONTEXT:
                payload = obj.get("payload")
                if isinstance(payload, dict):
                    current_model = as_non_empty_str(payload.get("model")) or current_model
                continue

            if kind != KIND_TOKEN_COUNT:
                continue

            payload = obj["payload"]
            info = payload.get("info")
            if not isinstance(info, dict):
                info = {}
            last = normalize_codex_usage(info.get("last_token_usage"))
            total = normalize_codex_usage(info.get("total_token_usage"))

            raw = last
            if raw is None and total is not None:
                raw = subtract_usage(total, previous_totals)
            if total is not None:
                previous_totals = total
            if raw is None:
                continue

            delta = to_delta(raw)
            if delta.is_empty():
                continue

            model = extract_model(payload) or current_model or LEGACY_FALLBACK_MODEL
            summary.usage.add(model, delta)

    return summary


def build_session(file: RolloutFile, summary: RolloutSummary) -> SessionRecord | None:
    meta, first_user_message = summary.meta, summary.first_user_message
    if meta is None or first_user_message is None:
        return None

    session_id = as_non_empty_str(meta.get("id")) or file.id
    if not session_id:
        return None

    timestamp = file.timestamp or parse_ts(meta.get("timestamp"))
    if timestamp is None:
        return None

    return SessionRecord(
        id=session_id,
        source=SOURCE_CODEX,
        path=str(file.path),
        resume_target=session_id,
        timestamp=timestamp,
        preview=summarize(first_user_message),
        token_usage=summary.usage.totals,
        model_usage=summary.usage.by_model,
        fork_signature=collapse_whitespace(first_user_message) or None,
        model=summary.usage.primary_model(),
        message_count=summary.message_count,
        meta=meta,
        head=summary.head,
    )


def scan_codex_sessions(
    codex_home: Path | str | None = None,
    *,
    limit: int | None = None,
    head_record_limit: int | None = None,
    scan_cap: int | None = None,
) -> list[SessionRecord]:
    """Draft Codex sessions, newest day first, bounded by scan_cap files."""
    home = Path(codex_home).expanduser() if codex_home is not None else config.codex_home()
    head_limit = config.CODEX_HEAD_RECORDS if head_record_limit is None else head_record_limit
    cap = config.CODEX_SCAN_CAP if scan_cap is None else scan_cap

    root = home / "sessions"
    if not root.is_dir():
        logger.debug(f"No Codex sessions directory at {root}")
        return []

    sessions: list[SessionRecord] = []
    scanned = 0

    for year in iter_dirs_desc(root):
        for month in iter_dirs_desc(year):
            for day in iter_dirs_desc(month):
                for file in iter_rollout_files(day):
                    scanned += 1
                    if scanned > cap:
                        logger.debug(f"Codex scan cap of {cap} files reached")
                        return sessions

                    try:
                        summary = read_rollout(file.path, head_limit)
                    except OSError as exc:
                        logger.warning(f"Failed to read Codex rollout {file.path}: {exc}")
                        continue

                    session = build_session(file, summary)
                    if session is None:
                        logger.debug(f"Skipping incomplete Codex rollout {file.path}")
                        continue
                    sessions.append(session)

                    if limit and len(sessions) >= limit:
                        return sessions

    return sessions
