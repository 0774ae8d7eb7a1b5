#!/usr/bin/env python3
"""Codex and Claude Code session inventory with token usage and cost."""

import argparse
import json
import sys
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from loguru import logger

import config
from claude_code_sessions import scan_claude_sessions
from codex_sessions import scan_codex_sessions
from forks import mark_forked_sessions, order_sessions_by_branch
from logging_config import setup_logging
from pricing import LiteLLMPricingFetcher, PricingFetcher, annotate_costs, drop_empty_sessions, format_usd
from records import SessionRecord, SessionsWithTotals
from utils import col, shorten_plain, tok

SOURCES = ("all", "codex", "claudecode")


def finalize(drafts: list[SessionRecord], pricing_fetcher: PricingFetcher | None = None) -> SessionsWithTotals:
    """Mark forks, order, drop empty sessions, price, and total."""
    mark_forked_sessions(drafts)
    ordered = drop_empty_sessions(order_sessions_by_branch(drafts))
    fetcher = pricing_fetcher or LiteLLMPricingFetcher()
    total_cost = annotate_costs(ordered, fetcher)
    return SessionsWithTotals(
        sessions=ordered,
        total_blended_tokens=sum(s.blended_tokens for s in ordered),
        total_cost_usd=total_cost,
    )


def get_codex_sessions(
    codex_home: Path | str | None = None,
    *,
    limit: int | None = None,
    head_record_limit: int | None = None,
    scan_cap: int | None = None,
    pricing_fetcher: PricingFetcher | None = None,
) -> SessionsWithTotals:
    drafts = scan_codex_sessions(
        codex_home, limit=limit, head_record_limit=head_record_limit, scan_cap=scan_cap
    )
    return finalize(drafts, pricing_fetcher)


def get_claude_sessions(
    claude_dirs: list[Path | str] | None = None,
    *,
    limit: int | None = None,
    pricing_fetcher: PricingFetcher | None = None,
) -> SessionsWithTotals:
    return finalize(scan_claude_sessions(claude_dirs, limit=limit), pricing_fetcher)


def safe_scan(name: str, scan: Callable[[], list[SessionRecord]]) -> list[SessionRecord]:
    """Run one source scan; a failure only empties that source."""
    try:
        return scan()
    except Exception as exc:
        logger.opt(exception=exc).warning(f"Failed to load {name} sessions")
        return []


def get_all_sessions(
    source: str = "all",
    *,
    codex_home: Path | str | None = None,
    claude_dirs: list[Path | str] | None = None,
    limit: int | None = None,
    pricing_fetcher: PricingFetcher | None = None,
) -> SessionsWithTotals:
    """Merged, branch-ordered, priced view of both sources. Never raises."""
    scans: dict[str, Callable[[], list[SessionRecord]]] = {}
    if source in ("all", "codex"):
        scans["Codex"] = lambda: scan_codex_sessions(codex_home, limit=limit)
    if source in ("all", "claudecode"):
        scans["Claude Code"] = lambda: scan_claude_sessions(claude_dirs, limit=limit)

    drafts: list[SessionRecord] = []
    with ThreadPoolExecutor(max_workers=max(1, len(scans))) as pool:
        futures = [pool.submit(safe_scan, name, scan) for name, scan in scans.items()]
        for future in futures:
            drafts.extend(future.result())

    try:
        return finalize(drafts, pricing_fetcher)
    except Exception as exc:
        logger.opt(exception=exc).warning("Failed to finalize sessions")
        return SessionsWithTotals()


def build_session_lines(result: SessionsWithTotals, *, color: bool) -> list[str]:
    lines: list[str] = []
    for s in result.sessions:
        src = "codex " if s.source == "codex" else "claude"
        preview = shorten_plain(s.preview or "(no preview)", 60)
        lines.append(
            f"{col(s.branch_marker, 'dim', enabled=color)} "
            f"{col(src, 'cyan' if s.source == 'codex' else 'magenta', enabled=color)}  "
            f"{col(f'{s.relative_time:<16}', 'dim', enabled=color)}"
            f"{tok(s.blended_tokens):>7}  "
            f"{col(f'{format_usd(s.cost_usd):>9}', 'green', enabled=color)}  "
            f"{preview}"
        )
    return lines


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="List past Codex and Claude Code sessions with cost")
    parser.add_argument("source", nargs="?", default="all", type=str.lower, choices=SOURCES)
    parser.add_argument("--limit", type=int, default=None, help="Max sessions per source")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    parser.add_argument("--offline-pricing", type=Path, default=None, help="LiteLLM-format price table JSON file")
    parser.add_argument("--log-level", default=config.LOG_LEVEL)
    parser.add_argument("--log-file", type=Path, default=config.LOG_FILE, help="Also write DEBUG logs to this file")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, log_file=args.log_file, file_level="DEBUG")

    fetcher = None
    if args.offline_pricing is not None:
        try:
            table = json.loads(args.offline_pricing.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            print(col(f"✗ Could not read price table {args.offline_pricing}: {exc}", "magenta"), file=sys.stderr)
            return 1
        fetcher = LiteLLMPricingFetcher(offline_data=table)

    result = get_all_sessions(args.source, limit=args.limit, pricing_fetcher=fetcher)

    if args.json:
        print(json.dumps(result.to_json(), indent=2))
        return 0

    if not result.sessions:
        print(col("✗ No sessions found", "magenta"))
        return 1

    color = sys.stdout.isatty()
    for line in build_session_lines(result, color=color):
        print(line)
    print(col("─" * 50, "dim", enabled=color))
    print(
        f"{col(f'{len(result.sessions):,}', 'bold', enabled=color)} sessions  "
        f"{col('│', 'dim', enabled=color)}  {col(tok(result.total_blended_tokens), 'bold', enabled=color)} tokens  "
        f"{col('│', 'dim', enabled=color)}  {col(format_usd(result.total_cost_usd), 'bold', 'green', enabled=color)}"
    )
    return 0


if __name__ == "__main__":
    exit(main())
