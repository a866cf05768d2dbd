"""Tests for the local session tracker."""

import asyncio
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_relay.api_client import (
    ApiError,
    CreateLiveSessionResponse,
    PushMessagesResponse,
    PushToolResultsResponse,
)
from agent_relay.claude_code import ClaudeCodeAdapter
from agent_relay.session_tracker import SessionTracker, StartResult

from conftest import append, assistant_line, user_line


def make_api(resumed=False, restored=False, message_count=0, appended=None):
    api = MagicMock()
    api.create_live_session = AsyncMock(
        return_value=CreateLiveSessionResponse(
            id="remote-1",
            resumed=resumed,
            restored=restored,
            message_count=message_count,
        )
    )
    api.push_messages = AsyncMock(
        side_effect=lambda session_id, messages: PushMessagesResponse(
            appended=len(messages) if appended is None else appended
        )
    )
    api.push_tool_results = AsyncMock(return_value=PushToolResultsResponse(appended=1))
    api.push_diff = AsyncMock()
    api.update_title = AsyncMock()
    api.mark_interactive = AsyncMock()
    api.disable_interactive = AsyncMock()
    api.delete_session = AsyncMock()
    api.complete_session = AsyncMock()
    return api


def make_tracker(api, allowed=True, diff_capturer=None, **kwargs):
    kwargs.setdefault("live_mode_delay", 60)
    return SessionTracker(
        api,
        repo_allowed=lambda repo_id: allowed,
        diff_capturer=diff_capturer or AsyncMock(return_value=None),
        repo_identifier=AsyncMock(return_value="github.com/acme/app"),
        repo_url=AsyncMock(return_value="https://github.com/acme/app"),
        poll_interval=0.05,
        **kwargs,
    )


def write_tool(tool_id, file_path):
    return {"type": "tool_use", "id": tool_id, "name": "Write", "input": {"file_path": file_path}}


@pytest.fixture
def adapter(session_file):
    return ClaudeCodeAdapter(home=session_file.parents[3])


class TestStartSession:
    @pytest.mark.asyncio
    async def test_second_start_reports_already_tracking(self, session_file, adapter):
        append(session_file, user_line("Fix the login bug"))
        api = make_api()
        tracker = make_tracker(api)

        first = await tracker.start_session(str(session_file), adapter)
        second = await tracker.start_session(str(session_file), adapter)

        assert first == StartResult.STARTED
        assert second == StartResult.ALREADY_TRACKING
        assert api.create_live_session.await_count == 1
        request = api.create_live_session.await_args.args[0]
        assert request.project_path == "/work/app"
        assert request.harness_session_id == "sess-1"
        assert request.harness == "claude-code"
        assert request.repo_url == "https://github.com/acme/app"
        await tracker.stop_all()

    @pytest.mark.asyncio
    async def test_concurrent_starts_create_once(self, session_file, adapter):
        append(session_file, user_line("hello"))
        api = make_api()
        tracker = make_tracker(api)

        results = await asyncio.gather(
            tracker.start_session(str(session_file), adapter),
            tracker.start_session(str(session_file), adapter),
        )

        assert sorted(results) == sorted([StartResult.STARTED, StartResult.ALREADY_TRACKING])
        assert api.create_live_session.await_count == 1
        await tracker.stop_all()

    @pytest.mark.asyncio
    async def test_disallowed_repo_is_skipped(self, session_file, adapter):
        append(session_file, user_line("hello"))
        api = make_api()
        tracker = make_tracker(api, allowed=False)

        assert await tracker.start_session(str(session_file), adapter) == StartResult.SKIP
        api.create_live_session.assert_not_awaited()
        assert not tracker.is_tracking(str(session_file))

    @pytest.mark.asyncio
    async def test_not_a_repository_is_skipped(self, session_file, adapter):
        api = make_api()
        tracker = make_tracker(api)
        tracker.repo_identifier = AsyncMock(return_value=None)

        assert await tracker.start_session(str(session_file), adapter) == StartResult.SKIP

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content",
        ["", "\n\n", json.dumps({"type": "summary", "summary": "s"}) + "\n", "not json\n"],
    )
    async def test_file_without_messages_is_retried_later(self, session_file, adapter, content):
        append(session_file, content)
        api = make_api()
        tracker = make_tracker(api)

        assert await tracker.start_session(str(session_file), adapter) == StartResult.RETRY_LATER
        api.create_live_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_failure_is_retried_later(self, session_file, adapter):
        append(session_file, user_line("hello"))
        api = make_api()
        api.create_live_session.side_effect = ApiError("server error", status=503)
        tracker = make_tracker(api)

        assert await tracker.start_session(str(session_file), adapter) == StartResult.RETRY_LATER
        assert not tracker.is_tracking(str(session_file))


class TestStreaming:
    @pytest.mark.asyncio
    async def test_messages_are_pushed_and_title_derived_once(self, session_file, adapter, wait_until):
        append(session_file, user_line("Fix the login bug"))
        api = make_api()
        tracker = make_tracker(api)
        await tracker.start_session(str(session_file), adapter)
        await wait_until(lambda: api.push_messages.await_count == 1)

        append(session_file, assistant_line({"type": "text", "text": "On it"}))
        await wait_until(lambda: api.update_title.await_count == 1)
        append(session_file, user_line("Also the logout bug"))
        await wait_until(lambda: api.push_messages.await_count == 3)

        api.update_title.assert_awaited_once_with("remote-1", "Fix the login bug")
        first_push = api.push_messages.await_args_list[0].args
        assert first_push[0] == "remote-1"
        assert first_push[1] == [{"role": "user", "content_blocks": [{"type": "text", "text": "Fix the login bug"}]}]
        assert tracker.get_active_sessions() == [
            {"id": "remote-1", "title": "Fix the login bug", "messageCount": 3}
        ]
        await tracker.stop_all()

    @pytest.mark.asyncio
    async def test_resumed_session_streams_only_new_lines(self, session_file, adapter, wait_until):
        append(session_file, user_line("old prompt"))
        api = make_api(resumed=True, message_count=5)
        tracker = make_tracker(api)
        await tracker.start_session(str(session_file), adapter)
        session = tracker.sessions[str(session_file)]
        await asyncio.sleep(0.2)
        api.push_messages.assert_not_awaited()

        append(session_file, user_line("new prompt"))
        await wait_until(lambda: api.push_messages.await_count == 1)

        assert api.push_messages.await_args.args[1][0]["content_blocks"][0]["text"] == "new prompt"
        assert session.title_derived
        api.update_title.assert_not_awaited()
        await tracker.stop_all()

    @pytest.mark.asyncio
    async def test_tool_results_are_pushed_with_absolute_index(self, session_file, adapter, wait_until):
        append(session_file, user_line("read it"))
        api = make_api(resumed=True, message_count=4)
        tracker = make_tracker(api)
        await tracker.start_session(str(session_file), adapter)
        session = tracker.sessions[str(session_file)]

        await tracker.queue_line(
            session,
            assistant_line({"type": "tool_use", "id": "t1", "name": "Read", "input": {}}),
        )
        await tracker.queue_line(
            session,
            json.dumps(
                {
                    "message": {
                        "role": "user",
                        "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "data"}],
                    }
                }
            ),
        )

        api.push_tool_results.assert_awaited_once()
        session_id, payload = api.push_tool_results.await_args.args
        assert session_id == "remote-1"
        assert payload == [{"tool_use_id": "t1", "message_index": 4, "content": "data", "is_error": None}]
        # The result-only line adds no message
        assert api.push_messages.await_count == 1
        await tracker.stop_all()

    @pytest.mark.asyncio
    async def test_diff_capture_is_debounced(self, session_file, adapter, wait_until):
        append(session_file, user_line("edit files"))
        fired_at = []

        async def capture(project_path, files):
            fired_at.append((time.monotonic(), set(files or ())))
            return "diff --git"

        api = make_api()
        tracker = make_tracker(api, diff_capturer=capture, diff_debounce=0.3)
        await tracker.start_session(str(session_file), adapter)
        session = tracker.sessions[str(session_file)]
        await wait_until(lambda: api.push_messages.await_count == 1)
        await wait_until(lambda: not session.diff_tasks)
        fired_at.clear()
        api.push_diff.reset_mock()

        for i in range(3):
            await tracker.queue_line(session, assistant_line(write_tool(f"w{i}", f"/work/app/f{i}.py")))
            last_line_at = time.monotonic()
            await asyncio.sleep(0.05)

        await asyncio.sleep(0.6)

        assert len(fired_at) == 1
        fired, files = fired_at[0]
        assert fired - last_line_at >= 0.25
        assert files == {"/work/app/f0.py", "/work/app/f1.py", "/work/app/f2.py"}
        api.push_diff.assert_awaited_once_with("remote-1", "diff --git")
        await tracker.stop_all()

    @pytest.mark.asyncio
    async def test_slow_capture_never_overwrites_a_newer_diff(self, session_file, adapter, wait_until):
        append(session_file, user_line("edit files"))
        calls = []

        async def capture(project_path, files):
            calls.append(set(files or ()))
            if len(calls) == 1:
                await asyncio.sleep(0.5)
                return "diff-old"
            return "diff-new"

        api = make_api()
        tracker = make_tracker(api, diff_capturer=capture, diff_debounce=0.05)
        await tracker.start_session(str(session_file), adapter)
        session = tracker.sessions[str(session_file)]

        await tracker.queue_line(session, assistant_line(write_tool("w1", "/work/app/a.py")))
        await wait_until(lambda: api.push_diff.await_count == 2)

        assert [c.args[1] for c in api.push_diff.await_args_list] == ["diff-old", "diff-new"]
        # The newer capture saw the file written after the first one began
        assert calls[1] == {"/work/app/a.py"}
        await tracker.stop_all()

    @pytest.mark.asyncio
    async def test_end_waits_for_every_outstanding_capture(self, session_file, adapter, wait_until):
        append(session_file, user_line("edit files"))
        calls = []
        events = []

        async def capture(project_path, files):
            calls.append(files)
            if len(calls) == 1:
                await asyncio.sleep(0.3)
                return "diff-old"
            return "diff-new"

        api = make_api()
        api.push_diff = AsyncMock(side_effect=lambda sid, diff: events.append(("push", diff)))
        api.complete_session = AsyncMock(
            side_effect=lambda sid, final_diff=None: events.append(("complete", final_diff))
        )
        tracker = make_tracker(api, diff_capturer=capture, diff_debounce=0.05)
        await tracker.start_session(str(session_file), adapter)
        session = tracker.sessions[str(session_file)]
        await wait_until(lambda: api.push_messages.await_count == 1)

        await tracker.queue_line(session, assistant_line(write_tool("w1", "/work/app/a.py")))
        await wait_until(lambda: len(session.diff_tasks) == 2)
        await tracker.end_session(str(session_file))

        assert events == [
            ("push", "diff-old"),
            ("push", "diff-new"),
            ("complete", "diff-new"),
        ]
        assert not session.diff_tasks

    @pytest.mark.asyncio
    async def test_existing_modifications_are_found_at_start(self, session_file, adapter):
        append(session_file, user_line("edit"))
        append(session_file, assistant_line(write_tool("w1", "/work/app/a.py")))
        diff = AsyncMock(return_value=None)
        tracker = make_tracker(make_api(), diff_capturer=diff)

        await tracker.start_session(str(session_file), adapter)

        assert tracker.sessions[str(session_file)].modified_files == {"/work/app/a.py"}
        await tracker.stop_all()

    @pytest.mark.asyncio
    async def test_collaborate_command_enables_interactive(self, session_file, adapter, wait_until):
        append(session_file, user_line("start"))
        api = make_api()
        tracker = make_tracker(api, live_mode_delay=0)
        await tracker.start_session(str(session_file), adapter)
        session = tracker.sessions[str(session_file)]
        await wait_until(lambda: session.live_mode)

        await tracker.queue_line(session, user_line("please /collaborate with me"))

        api.mark_interactive.assert_awaited_once_with("remote-1")
        assert session.interactive

        await tracker.end_session(str(session_file))
        api.disable_interactive.assert_awaited_once_with("remote-1")

    @pytest.mark.asyncio
    async def test_collaborate_ignored_before_live_mode(self, session_file, adapter):
        append(session_file, user_line("/collaborate"))
        api = make_api()
        tracker = make_tracker(api)
        await tracker.start_session(str(session_file), adapter)
        session = tracker.sessions[str(session_file)]

        await tracker.queue_line(session, user_line("/collaborate"))

        api.mark_interactive.assert_not_awaited()
        await tracker.stop_all()


class TestEndSession:
    @pytest.mark.asyncio
    async def test_idle_session_is_completed(self, session_file, adapter, wait_until):
        append(session_file, user_line("hello"))
        diff = AsyncMock(return_value="final diff")
        api = make_api()
        tracker = make_tracker(api, diff_capturer=diff, idle_timeout=0.2)
        await tracker.start_session(str(session_file), adapter)
        await wait_until(lambda: api.push_messages.await_count == 1)

        await asyncio.sleep(0.3)
        ended = await tracker.check_idle()

        assert ended == [str(session_file)]
        assert not tracker.is_tracking(str(session_file))
        api.complete_session.assert_awaited_once_with("remote-1", final_diff="final diff")
        api.delete_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_active_session_is_not_idle(self, session_file, adapter):
        append(session_file, user_line("hello"))
        tracker = make_tracker(make_api(), idle_timeout=60)
        await tracker.start_session(str(session_file), adapter)

        assert await tracker.check_idle() == []
        await tracker.stop_all()

    @pytest.mark.asyncio
    async def test_session_without_accepted_messages_is_deleted(self, session_file, adapter, wait_until):
        append(session_file, user_line("hello"))
        api = make_api(appended=0)
        tracker = make_tracker(api)
        await tracker.start_session(str(session_file), adapter)
        await wait_until(lambda: api.push_messages.await_count == 1)

        await tracker.end_session(str(session_file))

        api.delete_session.assert_awaited_once_with("remote-1")
        api.complete_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resumed_session_is_never_deleted(self, session_file, adapter):
        append(session_file, user_line("hello"))
        api = make_api(resumed=True, message_count=3)
        tracker = make_tracker(api)
        await tracker.start_session(str(session_file), adapter)

        await tracker.end_session(str(session_file))

        api.delete_session.assert_not_awaited()
        api.complete_session.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_already_completed_is_tolerated(self, session_file, adapter, wait_until):
        append(session_file, user_line("hello"))
        api = make_api()
        api.complete_session.side_effect = ApiError("gone", status=404)
        tracker = make_tracker(api)
        await tracker.start_session(str(session_file), adapter)
        await wait_until(lambda: api.push_messages.await_count == 1)

        await tracker.end_session(str(session_file))

        assert not tracker.is_tracking(str(session_file))

    @pytest.mark.asyncio
    async def test_ending_unknown_path_is_noop(self):
        api = make_api()
        tracker = make_tracker(api)

        await tracker.end_session("/nowhere.jsonl")

        api.complete_session.assert_not_awaited()
