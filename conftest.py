import os
import subprocess

import pytest

from blame_strata import AnnotatedRow, ProgressReporter

ALICE_COMMIT = "a" * 40
BOB_COMMIT = "b" * 40


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def line_porcelain():
    """`git blame --line-porcelain` for three lines: two by Alice, one by Bob."""
    alice = [
        "author Alice Doe",
        "author-mail <alice@example.com>",
        "author-time 1700000000",
        "author-tz +0000",
        "committer Alice Doe",
        "committer-mail <alice@example.com>",
        "committer-time 1700000000",
        "committer-tz +0000",
        "summary initial",
        "boundary",
        "filename src/app.py",
    ]
    bob = [
        "author Bob Smith",
        "author-mail <bob@example.com>",
        "author-time 1700100000",
        "author-tz +0000",
        "committer Bob Smith",
        "committer-mail <bob@example.com>",
        "committer-time 1700100000",
        "committer-tz +0000",
        "summary update",
        f"previous {ALICE_COMMIT} src/app.py",
        "filename src/app.py",
    ]
    return (
        [f"{ALICE_COMMIT} 1 1 2"] + alice + ["\tdef main():"]
        + [f"{ALICE_COMMIT} 2 2"] + alice + ["\t    return 1"]
        + [f"{BOB_COMMIT} 3 3 1"] + bob + ["\tauthor Mallory"]
    )


@pytest.fixture
def plain_porcelain(line_porcelain):
    """`git blame --porcelain`: metadata only on the first line of a commit."""
    return (
        line_porcelain[:13]
        + [f"{ALICE_COMMIT} 2 2", "\t    return 1"]
        + line_porcelain[26:]
    )


def make_row(author="Alice Doe", age_days=3, language=".py", cluster="src",
             repository="repo", file_path="src/app.py"):
    return AnnotatedRow(
        commit=ALICE_COMMIT,
        author=author,
        author_mail=f"{author.split()[0].lower()}@example.com",
        committer_time=1_700_000_000,
        boundary=False,
        file_path=file_path,
        cluster_path=cluster,
        language=language,
        repository=repository,
        age_days=age_days,
    )


@pytest.fixture
def annotated_rows():
    """Seven rows: Alice owns five (mostly old), Bob owns two recent ones."""
    return [
        make_row(age_days=400),
        make_row(age_days=400),
        make_row(age_days=400, language=".md", cluster="docs", file_path="docs/a.md"),
        make_row(age_days=20),
        make_row(age_days=3),
        make_row(author="Bob Smith", age_days=1),
        make_row(author="Bob Smith", age_days=1, language=".md", cluster="docs",
                 file_path="docs/a.md"),
    ]


@pytest.fixture
def git_repo(tmp_path):
    """
    Alice writes src/ in 2020, Bob adds docs and one line of src/app.py today.
    """
    repo = tmp_path / "repo"
    repo.mkdir()

    def run(*args, author=None, date=None):
        env = dict(os.environ)
        if author:
            name, email = author
            env.update(GIT_AUTHOR_NAME=name, GIT_AUTHOR_EMAIL=email,
                       GIT_COMMITTER_NAME=name, GIT_COMMITTER_EMAIL=email)
        if date:
            env.update(GIT_AUTHOR_DATE=date, GIT_COMMITTER_DATE=date)
        subprocess.run(["git", "-C", str(repo)] + list(args),
                       check=True, capture_output=True, env=env)

    run("init")
    run("config", "user.email", "tester@test.com")
    run("config", "user.name", "Tester")
    run("config", "commit.gpgsign", "false")

    alice = ("Alice Doe", "alice@example.com")
    bob = ("Bob Smith", "bob@example.com")

    # Commit 1: Alice, long ago
    (repo / "src" / "util").mkdir(parents=True)
    (repo / "src" / "app.py").write_text("import os\n\nprint(os.getcwd())\n", encoding="utf-8")
    (repo / "src" / "util" / "helpers.py").write_text("def helper():\n    return 1\n", encoding="utf-8")
    (repo / "empty.txt").write_text("", encoding="utf-8")
    run("add", ".")
    run("commit", "-m", "initial", author=alice, date="2020-01-01T12:00:00+0000")

    # Commit 2: Bob, now
    (repo / "docs").mkdir()
    (repo / "docs" / "readme.md").write_text("# App\n", encoding="utf-8")
    with open(repo / "src" / "app.py", "a", encoding="utf-8") as f:
        f.write("print('done')\n")
    run("add", ".")
    run("commit", "-m", "docs", author=bob)

    return str(repo)
