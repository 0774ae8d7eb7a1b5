import json
import os
import unittest

from claude_code_sessions import (
    MessageNode,
    TranscriptFile,
    decode_project_path,
    resolve_projects_dir,
    scan_claude_sessions,
    usage_key,
)
from pricing import LiteLLMPricingFetcher
from records import BRANCH_BASE, BRANCH_FIRST, SOURCE_CLAUDE
from sessions import get_claude_sessions
from tests.base import TempDirTestCase

SONNET = "claude-3-5-sonnet-20241022"


def sonnet_fetcher(**rates: float) -> LiteLLMPricingFetcher:
    table = {"input_cost_per_token": 3e-6, "output_cost_per_token": 1e-5}
    table.update(rates)
    return LiteLLMPricingFetcher(offline_data={SONNET: table})


def usage(input_tokens: int = 0, output_tokens: int = 0, *, cache_write: int = 0, cache_read: int = 0) -> dict[str, int]:
    return {
        "input_tokens": input_tokens,
        "cache_creation_input_tokens": cache_write,
        "cache_read_input_tokens": cache_read,
        "output_tokens": output_tokens,
    }


class ClaudeScanTests(TempDirTestCase):
    def test_missing_directories_return_empty(self) -> None:
        missing = self.root / "claude-non-existent"
        self.assertEqual([], scan_claude_sessions([missing]))

        result = get_claude_sessions([missing], pricing_fetcher=sonnet_fetcher())
        self.assertEqual([], result.sessions)
        self.assertEqual(0, result.total_blended_tokens)
        self.assertEqual(0, result.total_cost_usd)

    def test_reads_transcript_into_session(self) -> None:
        project = self.claude_project("-Users-test-project")
        leaf = "11111111-2222-3333-4444-555555555555"
        user = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
        transcript = self.write_jsonl(
            project / "transcript.jsonl",
            [
                {"type": "summary", "leafUuid": leaf, "summary": "Ship feature summary"},
                self.claude_user(
                    user,
                    "Build a feature that parses Claude transcripts",
                    sessionId="session-1",
                    cwd="/workspace/test-app",
                ),
                self.claude_assistant(
                    leaf,
                    parent=user,
                    ts="2025-01-03T12:00:00.000Z",
                    message_id=leaf,
                    usage=usage(400, 350, cache_write=10, cache_read=50),
                ),
            ],
        )

        result = get_claude_sessions([self.claude_dir], pricing_fetcher=sonnet_fetcher(cache_read_input_token_cost=1e-6))

        self.assertEqual(1, len(result.sessions))
        session = result.sessions[0]
        self.assertEqual(leaf, session.id)
        self.assertEqual(SOURCE_CLAUDE, session.source)
        self.assertEqual(str(transcript), session.path)
        self.assertEqual("Build a feature that parses Claude transcripts", session.preview)
        self.assertEqual("Ship feature summary", session.meta["summary"])
        self.assertEqual("/workspace/test-app", session.meta["cwd"])
        self.assertEqual(os.path.join(os.sep, "Users", "test", "project"), session.meta["project_path"])
        self.assertEqual("-Users-test-project", session.meta["claude_project_id"])
        self.assertEqual(2, session.message_count)
        self.assertEqual("2025-01-03T12:00:00.000Z", session.timestamp_utc)
        expected_usage = {
            "input_tokens": 460,
            "cached_input_tokens": 50,
            "output_tokens": 350,
            "reasoning_output_tokens": 0,
            "total_tokens": 810,
        }
        self.assertEqual(expected_usage, session.token_usage.to_json())
        self.assertEqual(expected_usage, session.model_usage[SONNET].to_json())
        self.assertEqual(760, session.blended_tokens)
        self.assertEqual(SONNET, session.model)
        self.assertAlmostEqual(0.00475, session.cost_usd, places=9)
        self.assertEqual(760, result.total_blended_tokens)
        self.assertAlmostEqual(0.00475, result.total_cost_usd, places=9)

    def test_resume_target_prefers_leaf_session_id(self) -> None:
        project = self.claude_project()
        self.write_jsonl(
            project / "resume.jsonl",
            [
                self.claude_user("u1", "Resume me"),
                self.claude_assistant("a1", parent="u1", usage=usage(10, 5), sessionId="sess-42"),
            ],
        )

        [session] = scan_claude_sessions([self.claude_dir])

        self.assertEqual("a1", session.id)
        self.assertEqual("sess-42", session.resume_target)

    def test_repeated_assistant_event_is_counted_once(self) -> None:
        project = self.claude_project("-Users-dedupe")
        repeated = usage(100, 50)
        self.write_jsonl(
            project / "dedupe.jsonl",
            [
                self.claude_user("user-1", "Plan the deployment steps", ts="2025-02-14T10:00:00.000Z"),
                self.claude_assistant(
                    "assistant-1", parent="user-1", ts="2025-02-14T10:00:00.000Z",
                    message_id="msg-123", request_id="req-123", usage=repeated,
                ),
                self.claude_assistant(
                    "assistant-2", parent="assistant-1", ts="2025-02-14T10:00:00.000Z",
                    message_id="msg-123", request_id="req-123", usage=repeated,
                ),
            ],
        )

        result = get_claude_sessions([self.claude_dir], pricing_fetcher=sonnet_fetcher())

        [session] = result.sessions
        self.assertEqual(
            {"input_tokens": 100, "cached_input_tokens": 0, "output_tokens": 50, "reasoning_output_tokens": 0, "total_tokens": 150},
            session.token_usage.to_json(),
        )
        self.assertAlmostEqual(0.0008, session.cost_usd, places=9)
        self.assertAlmostEqual(0.0008, result.total_cost_usd, places=9)

    def test_sessions_without_token_usage_are_skipped(self) -> None:
        project = self.claude_project("-Users-empty")
        self.write_jsonl(
            project / "empty.jsonl",
            [
                self.claude_user("user-empty", "Say hello", ts="2025-03-01T08:00:00.000Z"),
                self.claude_assistant(
                    "assistant-empty", parent="user-empty", ts="2025-03-01T08:00:05.000Z",
                    message_id="msg-empty", request_id="req-empty", usage=usage(0, 0),
                ),
                self.claude_user("user-none", "No reply yet", ts="2025-03-01T09:00:00.000Z"),
            ],
        )

        result = get_claude_sessions([self.claude_dir], pricing_fetcher=sonnet_fetcher())

        self.assertEqual([], result.sessions)
        self.assertEqual(0, result.total_blended_tokens)
        self.assertEqual(0, result.total_cost_usd)

    def test_branches_from_shared_prompt_are_marked_as_forks(self) -> None:
        project = self.claude_project("-Users-forks")
        self.write_jsonl(
            project / "forks.jsonl",
            [
                self.claude_user("user-fork", "Branching request", ts="2025-04-10T09:00:00.000Z"),
                self.claude_assistant(
                    "assistant-base", parent="user-fork", ts="2025-04-10T09:01:00.000Z",
                    message_id="msg-base", request_id="req-base", usage=usage(120, 40, cache_write=10),
                ),
                self.claude_assistant(
                    "assistant-fork", parent="user-fork", ts="2025-04-10T09:05:00.000Z",
                    message_id="msg-fork", request_id="req-fork", usage=usage(80, 30, cache_read=50),
                ),
            ],
        )

        result = get_claude_sessions(
            [self.claude_dir], pricing_fetcher=sonnet_fetcher(cache_read_input_token_cost=1e-6)
        )

        latest, base = result.sessions
        self.assertEqual("assistant-fork", latest.id)
        self.assertTrue(latest.is_fork)
        self.assertEqual(BRANCH_FIRST, latest.branch_marker)
        self.assertFalse(base.is_fork)
        self.assertEqual(BRANCH_BASE, base.branch_marker)
        self.assertEqual(
            {"input_tokens": 130, "cached_input_tokens": 0, "output_tokens": 40, "reasoning_output_tokens": 0, "total_tokens": 170},
            base.token_usage.to_json(),
        )
        self.assertEqual(
            {"input_tokens": 130, "cached_input_tokens": 50, "output_tokens": 30, "reasoning_output_tokens": 0, "total_tokens": 160},
            latest.token_usage.to_json(),
        )

    def test_shared_ancestor_usage_goes_to_oldest_branch(self) -> None:
        project = self.claude_project()
        self.write_jsonl(
            project / "shared.jsonl",
            [
                self.claude_user("u1", "Start here", ts="2025-05-01T10:00:00.000Z"),
                self.claude_assistant(
                    "a1", parent="u1", ts="2025-05-01T10:00:05.000Z",
                    message_id="msg-1", request_id="req-1", usage=usage(100, 20),
                ),
                self.claude_user("u2", "Then this", parent="a1", ts="2025-05-01T10:01:00.000Z"),
                self.claude_assistant(
                    "a2", parent="u2", ts="2025-05-01T10:01:05.000Z",
                    message_id="msg-2", request_id="req-2", usage=usage(20, 5),
                ),
                self.claude_user("u3", "Or rather this", parent="a1", ts="2025-05-01T11:00:00.000Z"),
                self.claude_assistant(
                    "a3", parent="u3", ts="2025-05-01T11:00:05.000Z",
                    message_id="msg-3", request_id="req-3", usage=usage(10, 3),
                ),
            ],
        )

        newest, oldest = scan_claude_sessions([self.claude_dir])

        self.assertEqual("a3", newest.id)
        self.assertEqual("a2", oldest.id)
        self.assertEqual(120, oldest.token_usage.input_tokens)
        self.assertEqual(10, newest.token_usage.input_tokens)
        self.assertEqual(130, oldest.token_usage.input_tokens + newest.token_usage.input_tokens)

    def test_leaf_whose_usage_was_already_claimed_is_not_admitted(self) -> None:
        project = self.claude_project()
        self.write_jsonl(
            project / "claimed.jsonl",
            [
                self.claude_user("u1", "Only one answer", ts="2025-05-01T10:00:00.000Z"),
                self.claude_assistant(
                    "a1", parent="u1", ts="2025-05-01T10:00:05.000Z",
                    message_id="msg-1", request_id="req-1", usage=usage(100, 20),
                ),
                self.claude_assistant(
                    "a1-copy", parent="u1", ts="2025-05-01T10:00:06.000Z",
                    message_id="msg-1", request_id="req-1", usage=usage(100, 20),
                ),
            ],
        )

        sessions = scan_claude_sessions([self.claude_dir])

        self.assertEqual(["a1"], [s.id for s in sessions])

    def test_preview_skips_wrappers_written_by_the_cli(self) -> None:
        project = self.claude_project()
        self.write_jsonl(
            project / "preview.jsonl",
            [
                self.claude_user("u1", "Caveat: The messages below were generated by the user", isMeta=True),
                self.claude_user("u2", "<command-name>/clear</command-name>", parent="u1"),
                self.claude_user("u3", "<local-command-stdout></local-command-stdout>", parent="u2"),
                self.claude_user(
                    "u4",
                    [{"type": "tool_result", "tool_use_id": "t1", "content": "ok"}],
                    parent="u3",
                ),
                self.claude_user("u5", "[Request interrupted by user]", parent="u4"),
                self.claude_user("u6", [{"type": "text", "text": "Fix   the\nflaky test"}], parent="u5"),
                self.claude_assistant("a1", parent="u6", usage=usage(10, 5)),
            ],
        )

        [session] = scan_claude_sessions([self.claude_dir])

        self.assertEqual("Fix the flaky test", session.preview)
        self.assertEqual("Fix the flaky test", session.fork_signature)

    def test_sidechain_only_conversations_are_excluded(self) -> None:
        project = self.claude_project()
        self.write_jsonl(
            project / "sidechain.jsonl",
            [
                self.claude_user("u1", "Subagent task", isSidechain=True),
                self.claude_assistant("a1", parent="u1", usage=usage(10, 5), isSidechain=True),
            ],
        )

        self.assertEqual([], scan_claude_sessions([self.claude_dir]))

    def test_parent_cycle_terminates(self) -> None:
        project = self.claude_project()
        self.write_jsonl(
            project / "cycle.jsonl",
            [
                self.claude_user("a", "Looping history", parent="b"),
                self.claude_assistant("b", parent="a", message_id="msg-b", usage=usage(10, 5)),
                self.claude_assistant(
                    "c", parent="a", ts="2025-01-03T12:00:09.000Z", message_id="msg-c", usage=usage(7, 3)
                ),
            ],
        )

        [session] = scan_claude_sessions([self.claude_dir])

        self.assertEqual("c", session.id)
        self.assertEqual("Looping history", session.preview)
        self.assertEqual(17, session.token_usage.input_tokens)

    def test_conversation_spanning_files_is_rebuilt(self) -> None:
        project = self.claude_project()
        self.write_jsonl(
            project / "first.jsonl",
            [
                self.claude_user("u1", "Long running work", sessionId="s1"),
                self.claude_assistant("a1", parent="u1", message_id="msg-1", usage=usage(10, 5)),
            ],
        )
        resumed = self.write_jsonl(
            project / "second.jsonl",
            [
                self.claude_user("u2", "continue", parent="a1", ts="2025-01-03T13:00:00.000Z"),
                self.claude_assistant(
                    "a2", parent="u2", ts="2025-01-03T13:00:05.000Z", message_id="msg-2", usage=usage(20, 5)
                ),
            ],
        )

        [session] = scan_claude_sessions([self.claude_dir])

        self.assertEqual("a2", session.id)
        self.assertEqual(str(resumed), session.path)
        self.assertEqual("Long running work", session.preview)
        self.assertEqual(30, session.token_usage.input_tokens)
        self.assertEqual(4, session.message_count)

    def test_limit_keeps_newest_sessions(self) -> None:
        project = self.claude_project()
        self.write_jsonl(
            project / "older.jsonl",
            [
                self.claude_user("u1", "Older prompt", ts="2025-01-01T10:00:00.000Z"),
                self.claude_assistant("a1", parent="u1", ts="2025-01-01T10:00:05.000Z", usage=usage(10, 5)),
            ],
        )
        self.write_jsonl(
            project / "newer.jsonl",
            [
                self.claude_user("u2", "Newer prompt", ts="2025-01-02T10:00:00.000Z"),
                self.claude_assistant("a2", parent="u2", ts="2025-01-02T10:00:05.000Z", usage=usage(10, 5)),
            ],
        )

        self.assertEqual(["a2", "a1"], [s.id for s in scan_claude_sessions([self.claude_dir])])
        self.assertEqual(["a2"], [s.id for s in scan_claude_sessions([self.claude_dir], limit=1)])

    def test_malformed_lines_are_ignored(self) -> None:
        project = self.claude_project()
        self.write_jsonl(
            project / "noisy.jsonl",
            [
                self.claude_user("u1", "Still parsed"),
                self.claude_assistant("a1", parent="u1", usage=usage(10, 5)),
            ],
            raw_lines={0: "{oops", 1: '"just a string"', 2: '{"type": "user"}'},
        )

        [session] = scan_claude_sessions([self.claude_dir])

        self.assertEqual("Still parsed", session.preview)


    def test_invalid_utf8_line_does_not_drop_transcript(self) -> None:
        project = self.claude_project()
        self.append_raw(
            project / "bytes.jsonl",
            b"\xff\xfe garbage",
            json.dumps(self.claude_user("u1", "Decoded anyway")).encode(),
            b'{"uuid": "junk-\xff", "type": "progress"}',
            json.dumps(self.claude_assistant("a1", parent="u1", usage=usage(10, 5))).encode(),
        )

        sessions = scan_claude_sessions([self.claude_dir])

        self.assertEqual(["a1"], [s.id for s in sessions])
        self.assertEqual("Decoded anyway", sessions[0].preview)


class ClaudeHelperTests(unittest.TestCase):
    def test_decode_project_path(self) -> None:
        self.assertEqual(os.path.join(os.sep, "Users", "me", "repo"), decode_project_path("-Users-me-repo"))
        self.assertEqual("plain", decode_project_path("plain"))
        self.assertIsNone(decode_project_path(None))

    def test_resolve_projects_dir(self) -> None:
        self.assertEqual("projects", resolve_projects_dir("/tmp/claude").name)
        self.assertEqual(resolve_projects_dir("/tmp/claude"), resolve_projects_dir("/tmp/claude/projects"))

    def test_usage_key_prefers_message_and_request_ids(self) -> None:
        file = TranscriptFile(path=None, project_id="p", mtime=0.0)

        def node(message_id: str | None, request_id: str | None) -> MessageNode:
            return MessageNode(
                uuid="n1", type="assistant", parent_uuid=None, timestamp=None,
                is_sidechain=False, is_meta=False, session_id=None, cwd=None,
                request_id=request_id, message={"id": message_id}, raw={}, file=file,
            )

        self.assertEqual("m:r", usage_key(node("m", "r")))
        self.assertEqual("m", usage_key(node("m", None)))
        self.assertEqual("r", usage_key(node(None, "r")))
        self.assertEqual("n1", usage_key(node(None, None)))


if __name__ == "__main__":
    unittest.main()
