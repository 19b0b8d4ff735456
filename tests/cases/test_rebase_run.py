"""Tests for running rebases through the sequence editor in a real repository."""

import os
import subprocess

import pytest

from conftest import commit_file, git
from git_hunk import (
    RebaseSpec,
    ValidationError,
    rebase_autosquash,
    rebase_control,
    rebase_list,
    rebase_run,
    rebase_status,
)

pytestmark = [pytest.mark.git, pytest.mark.rebase]


def subjects(repo, base):
    return git(repo, "log", "--reverse", "--format=%s", f"{base}..HEAD").split("\n")[:-1]


@pytest.fixture
def history(repo):
    """A base commit followed by three commits that touch separate files."""
    base = commit_file(repo, "README", "base\n", "base")
    a = commit_file(repo, "a.txt", "a\n", "add a")
    b = commit_file(repo, "b.txt", "b\n", "add b")
    c = commit_file(repo, "c.txt", "c\n", "add c")
    return base, a, b, c


def test_rebase_list(repo, history):
    base, a, b, c = history

    result = rebase_list(base)

    assert result["count"] == 3
    assert [(x["hash"], x["subject"], x["position"]) for x in result["commits"]] == [
        (a, "add a", 1),
        (b, "add b", 2),
        (c, "add c", 3),
    ]
    assert a.startswith(result["commits"][0]["short_hash"])


def test_reorder_and_drop(repo, history):
    base, a, b, c = history

    result = rebase_run(base, RebaseSpec.from_cli([c, a]))

    assert result["success"] is True
    assert result["in_progress"] is False
    assert subjects(repo, base) == ["add c", "add a"]
    assert not os.path.exists(os.path.join(repo, "b.txt"))


def test_short_hashes_are_accepted(repo, history):
    base, a, b, c = history

    rebase_run(base, RebaseSpec.from_cli([a[:7], c[:7], b[:7]]))

    assert subjects(repo, base) == ["add a", "add c", "add b"]


def test_squash_with_message(repo, history):
    base, a, b, c = history

    rebase_run(base, RebaseSpec.from_cli([a, f"squash:{b}:Add a and b", c]))

    assert subjects(repo, base) == ["Add a and b", "add c"]
    assert git(repo, "show", "--format=", "--name-only", "HEAD~1").split() == ["a.txt", "b.txt"]


def test_fixup_keeps_first_message(repo, history):
    base, a, b, c = history

    rebase_run(base, RebaseSpec.from_cli([a, f"fixup:{c}", b]))

    assert subjects(repo, base) == ["add a", "add b"]


def test_reword_with_message(repo, history):
    base, a, b, c = history

    rebase_run(base, RebaseSpec.from_cli([f'reword:{a}:"Add a, properly"', b, c]))

    assert subjects(repo, base) == ["Add a, properly", "add b", "add c"]


def test_exec_runs_between_commits(repo, history):
    base, a, b, c = history

    rebase_run(base, RebaseSpec.from_cli([a, "exec:git log -1 --format=%s > marker.txt", b, c]))

    with open(os.path.join(repo, "marker.txt"), encoding="utf-8") as f:
        assert f.read() == "add a\n"
    assert subjects(repo, base) == ["add a", "add b", "add c"]


def test_unknown_commit_is_rejected_before_rebasing(repo, history):
    base, a, b, c = history
    head = git(repo, "rev-parse", "HEAD")

    with pytest.raises(ValidationError, match="action 2: commit 'deadbeef' not found in rebase range"):
        rebase_run(base, RebaseSpec.from_cli([a, "deadbeef"]))

    assert git(repo, "rev-parse", "HEAD") == head
    assert rebase_status()["in_progress"] is False


def test_nothing_to_rebase(repo, history):
    base, a, b, c = history

    with pytest.raises(ValidationError, match="no commits to rebase"):
        rebase_run(c, RebaseSpec.from_cli([a]))


def test_conflict_pauses_then_abort(repo):
    base = commit_file(repo, "shared.txt", "one\n", "base")
    first = commit_file(repo, "shared.txt", "two\n", "make it two")
    second = commit_file(repo, "shared.txt", "three\n", "make it three")
    head = git(repo, "rev-parse", "HEAD")

    result = rebase_run(base, RebaseSpec.from_cli([second, first]))

    assert result["success"] is False
    assert result["in_progress"] is True
    assert result["has_conflict"] is True
    assert result["state"]["conflicts"] == ["shared.txt"]
    assert rebase_status()["state"] == "conflict"

    aborted = rebase_control("abort")

    assert aborted["in_progress"] is False
    assert aborted["message"] == "Rebase aborted"
    assert git(repo, "rev-parse", "HEAD") == head


def test_edit_stops_then_continue(repo, history):
    base, a, b, c = history

    result = rebase_run(base, RebaseSpec.from_cli([a, f"edit:{b}", c]))

    assert result["in_progress"] is True
    status = rebase_status()
    assert status["state"] == "edit"
    assert status["remaining"] == 1

    done = rebase_control("continue")

    assert done["success"] is True
    assert subjects(repo, base) == ["add a", "add b", "add c"]


def test_control_without_rebase_is_rejected(repo, history):
    with pytest.raises(ValidationError, match="no rebase in progress"):
        rebase_control("continue")


def test_autosquash(repo):
    base = commit_file(repo, "README", "base\n", "base")
    commit_file(repo, "parser.py", "def parse():\n    pass\n", "add parser")
    commit_file(repo, "lexer.py", "def lex():\n    pass\n", "add lexer")
    commit_file(repo, "parser.py", "def parse():\n    return []\n", "fixup! add parser")

    preview = rebase_autosquash(base, dry_run=True)
    assert preview["fixups_applied"] == 1
    assert [a["subject"] for a in preview["actions"]] == ["add parser", "fixup! add parser", "add lexer"]
    assert subjects(repo, base) == ["add parser", "add lexer", "fixup! add parser"]

    result = rebase_autosquash(base)

    assert result["success"] is True
    assert subjects(repo, base) == ["add parser", "add lexer"]
    assert git(repo, "show", "HEAD~1:parser.py") == "def parse():\n    return []\n"


def test_autosquash_without_fixups(repo, history):
    base, a, b, c = history

    result = rebase_autosquash(base)

    assert result == {"success": True, "message": "No fixup/squash commits found", "fixups_applied": 0}


def test_git_failure_surfaces_as_called_process_error(repo, history):
    base, a, b, c = history
    with open(os.path.join(repo, "a.txt"), "w", encoding="utf-8") as f:
        f.write("dirty\n")

    with pytest.raises(subprocess.CalledProcessError):
        rebase_run(base, RebaseSpec.from_cli([b, a, c]))
