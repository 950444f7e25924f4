import os
import pytest
import subprocess
from datetime import datetime, timezone
from repo_timeline import (
    ChangeKind, Commit, FileChange, ProgressReporter, StaticCommitLog,
)

A = ChangeKind.ADDED
M = ChangeKind.MODIFIED
D = ChangeKind.DELETED


def ts(year, month, day, hour=12, minute=0):
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def make_commit(hash, author, when, *changes, message="change"):
    """changes are (path, kind, added, removed) tuples"""
    return Commit(
        hash=hash,
        author=author,
        email=f"{author.lower()}@example.com",
        timestamp=when,
        message=message,
        changes=tuple(FileChange(*change) for change in changes),
    )


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def scenario_commits():
    """a.txt added, grown to 80 lines, then deleted on three consecutive days."""
    return [
        make_commit("aaa1110", "Alice", ts(2024, 1, 1), ("a.txt", A, 50, 0)),
        make_commit("bbb2220", "Bob", ts(2024, 1, 2), ("a.txt", M, 30, 0)),
        make_commit("ccc3330", "Alice", ts(2024, 1, 3), ("a.txt", D, 0, 80)),
    ]


@pytest.fixture
def sample_commits():
    """Nested paths, two authors, a quiet week and a month boundary."""
    return [
        make_commit(
            "c0ffee1", "Alice", ts(2024, 1, 29, 9),
            ("src/main.py", A, 50, 0),
            ("src/utils.py", A, 30, 0),
            ("README.md", A, 10, 0),
        ),
        make_commit(
            "c0ffee2", "Bob", ts(2024, 1, 31, 18),
            ("src/main.py", M, 10, 3),
            ("tests/test_main.py", A, 40, 0),
        ),
        # nothing during the week of Feb 5
        make_commit(
            "c0ffee3", "Alice", ts(2024, 2, 14, 8),
            ("src/utils.py", D, 0, 30),
            ("src/core/engine.py", A, 120, 0),
        ),
        make_commit(
            "c0ffee4", "Carol", ts(2024, 2, 15, 23, 59),
            ("src/main.py", M, 5, 8),
            ("docs/guide.md", A, 25, 0),
        ),
    ]


@pytest.fixture
def sample_log(sample_commits):
    return StaticCommitLog(sample_commits)


@pytest.fixture
def git_repo(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()

    def run(*args, env=None):
        subprocess.run(["git", "-C", str(repo)] + list(args),
                       check=True, capture_output=True, env=env)

    def commit(message, date):
        env = dict(os.environ, GIT_AUTHOR_DATE=date, GIT_COMMITTER_DATE=date)
        run("commit", "-m", message, env=env)

    run("init")
    run("config", "user.email", "tester@test.com")
    run("config", "user.name", "Tester")
    run("config", "commit.gpgsign", "false")

    # Commit 1: two files, one nested
    (repo / "app.py").write_text("print('hello')\n", encoding='utf-8')
    (repo / "lib").mkdir()
    (repo / "lib" / "util.py").write_text("def helper():\n    pass\n", encoding='utf-8')
    run("add", ".")
    commit("initial", "2024-01-01T10:00:00+00:00")

    # Commit 2: grow app.py
    (repo / "app.py").write_text("print('hello')\nprint('world')\n", encoding='utf-8')
    run("add", ".")
    commit("update app", "2024-01-02T10:00:00+00:00")

    # Commit 3: delete the nested file, add a readme
    run("rm", "-q", "lib/util.py")
    (repo / "readme.md").write_text("# App\n", encoding='utf-8')
    run("add", ".")
    commit("drop lib, add readme", "2024-01-10T10:00:00+00:00")

    return str(repo)
