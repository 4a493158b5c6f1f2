"""Tests for failure detection in session transcripts."""

import json

import pytest

from distill.errors import StoreError
from distill.learn.failures import detect_failures, load_transcript
from distill.learn.models import FailureType


def _msg(role: str, content) -> dict:
    return {"role": role, "content": content}


def _types(transcript) -> list[FailureType]:
    return [f.type for f in detect_failures(transcript)]


class TestRetryLoop:
    def test_three_consecutive_errors(self):
        transcript = {
            "messages": [
                _msg("assistant", "Error: module not found"),
                _msg("assistant", "The import failed again"),
                _msg("assistant", "Another exception while running"),
            ]
        }

        failures = detect_failures(transcript)

        assert [f.type for f in failures] == [FailureType.RETRY_LOOP]
        assert failures[0].description == "3 consecutive errors detected"

    def test_success_resets_the_streak(self):
        transcript = {
            "messages": [
                _msg("assistant", "Error: module not found"),
                _msg("assistant", "Error: still missing"),
                _msg("assistant", "All good now"),
                _msg("assistant", "Error: something new"),
            ]
        }

        assert _types(transcript) == []

    def test_user_errors_do_not_count(self):
        transcript = {"messages": [_msg("user", "error error error")] * 3}

        assert _types(transcript) == []

    def test_counter_restarts_after_reporting(self):
        transcript = {"messages": [_msg("assistant", "error")] * 5}

        assert _types(transcript) == [FailureType.RETRY_LOOP]


class TestBacktracking:
    def test_same_file_edited_repeatedly(self):
        transcript = {
            "messages": [
                _msg("assistant", "Edit file src/app.py"),
                _msg("assistant", "Edit file src/other.py"),
                _msg("assistant", "Edit file src/app.py"),
                _msg("assistant", "Edit file src/app.py"),
            ]
        }

        failures = detect_failures(transcript)

        assert [f.type for f in failures] == [FailureType.BACKTRACKING]
        assert "src/app.py" in failures[0].description

    def test_edits_outside_window_do_not_count(self):
        messages = [_msg("assistant", "Edit file a.py")]
        messages += [_msg("assistant", f"Edit file other{i}.py") for i in range(6)]
        messages += [_msg("assistant", "Edit file a.py")] * 2

        assert _types({"messages": messages}) == []


class TestGitRevert:
    @pytest.mark.parametrize(
        "command", ["git reset --hard HEAD~1", "git revert abc123", "git checkout -- src/app.py"]
    )
    def test_detected(self, command):
        assert _types({"messages": [_msg("assistant", f"Running {command}")]}) == [
            FailureType.GIT_REVERT
        ]

    def test_plain_checkout_is_fine(self):
        assert _types({"messages": [_msg("assistant", "git checkout main")]}) == []


class TestMessageShapes:
    def test_nested_message_key(self):
        transcript = {"messages": [{"message": _msg("assistant", "git reset --hard")}]}

        assert _types(transcript) == [FailureType.GIT_REVERT]

    def test_structured_content_is_searched(self):
        content = [{"type": "tool_use", "input": {"command": "git reset --hard"}}]

        assert _types({"messages": [_msg("assistant", content)]}) == [FailureType.GIT_REVERT]

    def test_context_is_bounded(self):
        transcript = {"messages": [_msg("assistant", "git reset --hard " + "x" * 2000)]}

        assert len(detect_failures(transcript)[0].context) == 500

    def test_empty_transcript(self):
        assert detect_failures({}) == []


class TestLoadTranscript:
    def test_reads_json_object(self, tmp_path):
        path = tmp_path / "s1.json"
        path.write_text(json.dumps({"messages": []}))

        assert load_transcript(path) == {"messages": []}

    def test_bad_json(self, tmp_path):
        path = tmp_path / "s1.json"
        path.write_text("not json")

        with pytest.raises(StoreError):
            load_transcript(path)

    def test_non_object(self, tmp_path):
        path = tmp_path / "s1.json"
        path.write_text("[]")

        with pytest.raises(StoreError):
            load_transcript(path)
