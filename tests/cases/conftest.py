"""pytest configuration for git-hunk tests.

Registers custom markers and provides a throwaway repository for the tests
that drive a real git binary.
"""

import os
import shutil
import subprocess

import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "git: Tests that run real git commands in a temporary repository"
    )
    config.addinivalue_line(
        "markers",
        "rebase: Tests that run a full git rebase -i through the sequence editor"
    )


def git(repo, *args, input_text=None):
    """Run git in repo and return stdout, failing the test on error."""
    p = subprocess.run(
        ["git", *args],
        cwd=repo,
        capture_output=True,
        text=True,
        input=input_text,
    )
    assert p.returncode == 0, f"git {' '.join(args)} failed: {p.stderr}"
    return p.stdout


def write(repo, name, text):
    path = os.path.join(repo, name)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)


def commit_file(repo, name, text, message):
    """Write a file, stage it and commit; return the full commit hash."""
    write(repo, name, text)
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD").strip()


@pytest.fixture
def repo(tmp_path, monkeypatch):
    """Provide an empty repository on branch main, isolated from user config.

    The test runs with the repository as its working directory.
    """
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", os.devnull)
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Hunk Tester")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tester@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Hunk Tester")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tester@example.com")
    for var in ("GIT_DIR", "GIT_WORK_TREE", "GIT_INDEX_FILE", "GIT_EDITOR", "GIT_SEQUENCE_EDITOR"):
        monkeypatch.delenv(var, raising=False)

    path = tmp_path / "repo"
    path.mkdir()
    git(path, "init", "-q")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    git(path, "config", "commit.gpgsign", "false")
    git(path, "config", "core.autocrlf", "false")
    monkeypatch.chdir(path)
    return str(path)
