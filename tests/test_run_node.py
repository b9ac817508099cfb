"""Tests for CLI helpers: rendering, argument parsing, snippets."""

import json
import random
from datetime import datetime, timedelta, timezone

import pytest

from checkins.messages import CheckIn
from checkins.run_node import initials, parse_args, render_checkin, run_cli, time_ago
from checkins.snippets import PLACEHOLDER, SnippetPicker

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_time_ago():
    assert time_ago(NOW - timedelta(seconds=5), NOW) == "just now"
    assert time_ago(NOW - timedelta(seconds=45), NOW) == "45 seconds ago"
    assert time_ago(NOW - timedelta(minutes=1), NOW) == "1 minute ago"
    assert time_ago(NOW - timedelta(minutes=12), NOW) == "12 minutes ago"
    assert time_ago(NOW - timedelta(hours=3), NOW) == "3 hours ago"
    assert time_ago(NOW - timedelta(days=2), NOW) == "2 days ago"


def test_initials():
    assert initials("alice") == "A"
    assert initials("jane-doe") == "JD"
    assert initials("a_b_c") == "AB"
    assert initials("") == "?"


def test_render_uses_initials_without_avatar():
    checkin = CheckIn("jane-doe", ("python", "ai"), "training", NOW - timedelta(minutes=2), pending=True)
    text = render_checkin(checkin, NOW)
    assert text.startswith("(JD) jane-doe · 2 minutes ago · sending…  [python, ai]")
    assert "training" in text

    with_avatar = CheckIn("bob", (), "", NOW, avatar_ref="https://example.com/b.png")
    assert render_checkin(with_avatar, NOW) == "bob · just now"


def test_parse_checkin_command():
    args = parse_args(["--mode", "cli", "--id", "alice", "checkin", "--tag", "python", "--tag", "ai", "fixing", "bugs"])
    assert args.mode == "cli"
    assert args.ident == "alice"
    assert args.tags == ["python", "ai"]
    assert args.message == ["fixing", "bugs"]


def test_snippets_from_file(tmp_path):
    path = tmp_path / "snippets.json"
    path.write_text(json.dumps(["one", "", 3, "two"]))
    picker = SnippetPicker(path, rng=random.Random(1))
    assert picker.snippets == ["one", "two"]
    assert picker.pick() in ("one", "two")


def test_snippets_fall_back_on_bad_file(tmp_path):
    missing = SnippetPicker(tmp_path / "nope.json")
    assert missing.pick() in missing.snippets
    assert missing.snippets

    path = tmp_path / "object.json"
    path.write_text("{}")
    assert SnippetPicker(path).snippets == missing.snippets

    assert SnippetPicker(fallback=()).pick() == PLACEHOLDER


def test_render_marks_own_entry():
    mine = CheckIn("alice", (), "", NOW, avatar_ref="https://example.com/a.png")
    assert render_checkin(mine, NOW, me="alice") == "alice (you) · just now"
    assert render_checkin(mine, NOW, me="bob") == "alice · just now"


@pytest.mark.asyncio
async def test_cli_checkin_reports_relay_rejection(client_settings, capsys):
    """The second run sees the first check-in replayed, but must wait for its own verdict."""
    argv = ["--mode", "cli", "--id", "alice", "checkin", "--tag", "python"]
    await run_cli(client_settings, parse_args(argv + ["first"]))
    assert "first" in capsys.readouterr().out

    with pytest.raises(SystemExit) as excinfo:
        await run_cli(client_settings, parse_args(argv + ["second"]))
    assert "Relay rejected check-in" in str(excinfo.value.code)
    assert "second" not in capsys.readouterr().out
