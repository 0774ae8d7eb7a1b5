"""Fork detection and branch-aware ordering.

Resuming a conversation in either CLI starts a new session that replays the
same opening message. Sessions sharing that message form a fork group: the
oldest is the base, the rest are branches. Groups are listed as one block.
"""

from dataclasses import dataclass, field
from datetime import datetime

from records import BRANCH_BASE, BRANCH_FIRST, BRANCH_MID, BRANCH_NONE, SessionRecord


@dataclass(slots=True)
class ForkGroup:
    sessions: list[SessionRecord] = field(default_factory=list)
    latest: datetime | None = None


def group_by_signature(sessions: list[SessionRecord]) -> dict[str, list[SessionRecord]]:
    buckets: dict[str, list[SessionRecord]] = {}
    for session in sessions:
        if not session.fork_signature:
            continue
        buckets.setdefault(session.fork_signature, []).append(session)
    return buckets


def set_branch_markers(base: SessionRecord, branches: list[SessionRecord]) -> None:
    base.branch_marker = BRANCH_BASE
    newest_first = sorted(branches, key=lambda s: s.timestamp, reverse=True)
    for i, session in enumerate(newest_first):
        session.branch_marker = BRANCH_FIRST if i == 0 else BRANCH_MID


def mark_forked_sessions(sessions: list[SessionRecord]) -> None:
    """Flag every session but the oldest in each signature bucket as a fork."""
    for bucket in group_by_signature(sessions).values():
        if len(bucket) <= 1:
            for session in bucket:
                session.is_fork = False
                session.branch_marker = BRANCH_NONE
            continue
        # Stable sort: among equal timestamps the first one scanned is the base.
        base, *branches = sorted(bucket, key=lambda s: s.timestamp)
        base.is_fork = False
        for session in branches:
            session.is_fork = True
        set_branch_markers(base, branches)


def order_sessions_by_branch(sessions: list[SessionRecord]) -> list[SessionRecord]:
    """Newest first, with each fork group kept together at its newest member."""
    groups: dict[str, ForkGroup] = {}
    singles: list[SessionRecord] = []

    for session in sessions:
        if not session.branch_marker.strip():
            singles.append(session)
            continue
        key = session.fork_signature or session.id
        group = groups.setdefault(key, ForkGroup())
        group.sessions.append(session)
        if group.latest is None or session.timestamp > group.latest:
            group.latest = session.timestamp

    ordered_groups = list(groups.values())
    for group in ordered_groups:
        group.sessions.sort(key=lambda s: s.timestamp, reverse=True)
    ordered_groups.sort(key=lambda g: g.latest, reverse=True)
    singles.sort(key=lambda s: s.timestamp, reverse=True)

    ordered: list[SessionRecord] = []
    gi = si = 0
    while gi < len(ordered_groups) or si < len(singles):
        if si >= len(singles) or (
            gi < len(ordered_groups) and ordered_groups[gi].latest >= singles[si].timestamp
        ):
            ordered.extend(ordered_groups[gi].sessions)
            gi += 1
        else:
            ordered.append(singles[si])
            si += 1
    return ordered
