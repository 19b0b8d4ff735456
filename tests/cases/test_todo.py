"""Tests for todo parsing, todo planning and autosquash ordering."""

import logging
import os

import pytest

from git_hunk import (
    CommitInfo,
    ParseError,
    RebaseActionType,
    RebaseSpec,
    TodoEntry,
    ValidationError,
    amend_message_command,
    apply_spec_file,
    build_autosquash_plan,
    find_autosquash_target,
    format_todo,
    parse_todo,
    plan_todo,
    reorder_to_match_spec,
    resolve_commit,
)


TODO = """pick 1111111aaaa First commit
pick 2222222bbbb Second commit
fixup -C 3333333cccc fixup! First commit

# Rebase 0000000..3333333 onto 0000000 (3 commands)
#
# Commands:
# p, pick <commit> = use commit
"""


def test_parse_todo_skips_comments_and_fixup_flags():
    entries = parse_todo(TODO)

    assert entries == [
        TodoEntry(RebaseActionType.PICK, "1111111aaaa", "First commit"),
        TodoEntry(RebaseActionType.PICK, "2222222bbbb", "Second commit"),
        TodoEntry(RebaseActionType.FIXUP, "3333333cccc", "fixup! First commit"),
    ]


def test_parse_todo_strips_comment_marker_before_subject():
    entries = parse_todo("p 1111111aaaa # First commit\nx make test\n")

    assert entries == [
        TodoEntry(RebaseActionType.PICK, "1111111aaaa", "First commit"),
        TodoEntry(RebaseActionType.EXEC, "", "make test"),
    ]


def test_parse_todo_ignores_non_plan_verbs(caplog):
    text = "label onto\nreset onto\npick 1111111aaaa First\nbreak\nupdate-ref refs/heads/topic\n"

    with caplog.at_level(logging.WARNING, logger="git_hunk"):
        entries = parse_todo(text)

    assert entries == [TodoEntry(RebaseActionType.PICK, "1111111aaaa", "First")]
    assert sum("ignoring todo line" in r.getMessage() for r in caplog.records) == 4


@pytest.mark.parametrize("text,message", [
    ("frobnicate 1111111\n", "unknown action"),
    ("pick\n", "pick without a commit"),
    ("exec\n", "exec without a command"),
])
def test_parse_todo_errors(text, message):
    with pytest.raises(ParseError, match=message):
        parse_todo(text)


def test_format_todo():
    entries = [
        TodoEntry(RebaseActionType.SQUASH, "2222222bbbb", "Second commit"),
        TodoEntry(RebaseActionType.EXEC, "", "make test"),
        TodoEntry(RebaseActionType.DROP, "1111111aaaa"),
    ]

    assert format_todo(entries) == "squash 2222222bbbb Second commit\nexec make test\ndrop 1111111aaaa\n"


def test_resolve_commit_prefixes_both_ways():
    entries = parse_todo(TODO)

    assert resolve_commit("1111111aaaa", entries).subject == "First commit"
    assert resolve_commit("2222222", entries).subject == "Second commit"
    assert resolve_commit("2222222BBBB0000", entries).subject == "Second commit"
    assert resolve_commit("4444444", entries) is None


def test_resolve_commit_rejects_ambiguous_prefix():
    entries = [
        TodoEntry(RebaseActionType.PICK, "abcdef01111", "one"),
        TodoEntry(RebaseActionType.PICK, "abcdef02222", "two"),
    ]

    with pytest.raises(ValidationError, match="ambiguous"):
        resolve_commit("abcdef0", entries)
    assert resolve_commit("abcdef02222", entries).subject == "two"


def test_reorder_follows_spec_and_drops_unlisted():
    spec = RebaseSpec.from_cli(["2222222,1111111,exec:make test"])

    entries = reorder_to_match_spec(spec, parse_todo(TODO))

    assert entries == [
        TodoEntry(RebaseActionType.PICK, "2222222bbbb", "Second commit"),
        TodoEntry(RebaseActionType.PICK, "1111111aaaa", "First commit"),
        TodoEntry(RebaseActionType.EXEC, "", "make test"),
    ]


def test_plan_todo_squash_and_drop():
    spec = RebaseSpec.from_cli(["1111111,squash:3333333,drop:2222222"])

    assert plan_todo(spec, TODO) == (
        "pick 1111111aaaa First commit\n"
        "squash 3333333cccc fixup! First commit\n"
        "drop 2222222bbbb Second commit\n"
    )


def test_plan_todo_reword_message_becomes_amend_exec():
    spec = RebaseSpec.from_cli(['reword:1111111:"It\'s better"'])

    assert plan_todo(spec, TODO) == (
        "pick 1111111aaaa First commit\n"
        "exec printf '%s\\n' 'It'\"'\"'s better' | git commit --amend --only --allow-empty --no-verify -F -\n"
    )


def test_amend_message_command_is_single_line():
    cmd = amend_message_command("Subject\n\nBody; rm -rf /\n$(whoami)")

    assert "\n" not in cmd
    assert cmd == (
        "printf '%s\\n' Subject '' 'Body; rm -rf /' '$(whoami)'"
        " | git commit --amend --only --allow-empty --no-verify -F -"
    )


def test_reword_without_message_is_left_to_git():
    spec = RebaseSpec.from_cli(["reword:2222222"])

    assert plan_todo(spec, TODO) == "reword 2222222bbbb Second commit\n"


def test_plan_todo_rejects_unknown_commit():
    spec = RebaseSpec.from_cli(["1111111,9999999"])

    with pytest.raises(ValidationError, match="action 2: commit '9999999' not found in rebase range"):
        plan_todo(spec, TODO)


def test_plan_todo_needs_commits():
    spec = RebaseSpec.from_cli(["1111111"])

    with pytest.raises(ValidationError, match="no commits found"):
        plan_todo(spec, "# nothing to do\n")


def test_apply_spec_file_rewrites_todo(tmp_path):
    spec_path = tmp_path / "spec.json"
    todo_path = tmp_path / "git-rebase-todo"
    spec_path.write_text(RebaseSpec.from_cli(["2222222"]).to_json(), encoding="utf-8")
    todo_path.write_text(TODO, encoding="utf-8")

    apply_spec_file(os.fspath(spec_path), os.fspath(todo_path))

    assert todo_path.read_text(encoding="utf-8") == "pick 2222222bbbb Second commit\n"


def commit(n, subject):
    h = str(n) * 40
    return CommitInfo(hash=h, short_hash=h[:7], subject=subject)


def test_autosquash_moves_fixups_after_targets():
    commits = [
        commit(1, "Add parser"),
        commit(2, "Add lexer"),
        commit(3, "fixup! Add parser"),
        commit(4, "squash! Add lex"),
        commit(5, "fixup! Add parser"),
    ]

    plan = build_autosquash_plan(commits)

    assert [(s.action, s.commit.subject) for s in plan.steps] == [
        (RebaseActionType.PICK, "Add parser"),
        (RebaseActionType.FIXUP, "fixup! Add parser"),
        (RebaseActionType.FIXUP, "fixup! Add parser"),
        (RebaseActionType.PICK, "Add lexer"),
        (RebaseActionType.SQUASH, "squash! Add lex"),
    ]
    assert [s.commit.hash[0] for s in plan.steps] == ["1", "3", "5", "2", "4"]
    assert plan.steps[1].target == commits[0].hash
    assert plan.fixup_count == 3


def test_autosquash_unresolved_fixup_goes_last_as_pick():
    commits = [commit(1, "Add parser"), commit(2, "fixup! Something else"), commit(3, "Add lexer")]

    plan = build_autosquash_plan(commits)

    assert [(s.action, s.commit.subject) for s in plan.steps] == [
        (RebaseActionType.PICK, "Add parser"),
        (RebaseActionType.PICK, "Add lexer"),
        (RebaseActionType.PICK, "fixup! Something else"),
    ]
    assert plan.fixup_count == 0


def test_autosquash_plan_spec_is_valid():
    plan = build_autosquash_plan([commit(1, "Add parser"), commit(2, "fixup! Add parser")])
    spec = plan.spec

    spec.validate()
    assert [(a.action, a.commit) for a in spec.actions] == [
        (RebaseActionType.PICK, "1" * 40),
        (RebaseActionType.FIXUP, "2" * 40),
    ]


def test_autosquash_target_lookup_order():
    candidates = [commit(1, "Same"), commit(2, "Same"), commit(7, "Another thing")]

    assert find_autosquash_target("Same", candidates) is candidates[0]
    assert find_autosquash_target("Another", candidates) is candidates[2]
    assert find_autosquash_target("7777777", candidates) is candidates[2]
    assert find_autosquash_target("fixup! Another thing", candidates) is candidates[2]
    assert find_autosquash_target("Missing", candidates) is None
    assert find_autosquash_target("", candidates) is None
