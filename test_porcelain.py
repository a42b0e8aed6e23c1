import pytest

from blame_strata import (
    BlameRow,
    is_hunk_header,
    iter_blame_rows,
    parse_porcelain,
    render_porcelain,
)
from conftest import ALICE_COMMIT, BOB_COMMIT


# ============================================================================
# HEADER DETECTION
# ============================================================================

def test_hunk_header_variants():
    assert is_hunk_header(f"{ALICE_COMMIT} 1 1 2")
    assert is_hunk_header(f"{ALICE_COMMIT} 2 2")
    assert is_hunk_header(f"^{ALICE_COMMIT} 1 1 1")
    assert is_hunk_header(f"{'0123456789abcdef' * 2}{'a' * 8} 10 12 3")


def test_not_hunk_headers():
    assert not is_hunk_header("author Alice")
    assert not is_hunk_header(f"{'a' * 39} 1 1")
    assert not is_hunk_header(f"{'a' * 41} 1 1")
    assert not is_hunk_header(f"^^{ALICE_COMMIT} 1 1")
    assert not is_hunk_header(ALICE_COMMIT)
    assert not is_hunk_header(f"{ALICE_COMMIT} one two")
    assert not is_hunk_header(f"\t{ALICE_COMMIT} 1 1")


# ============================================================================
# PARSING
# ============================================================================

def test_parse_two_hunks():
    output = "\n".join([
        f"{ALICE_COMMIT} 1 1 1",
        "author Alice Doe",
        "author-mail <alice@example.com>",
        "committer-time 1700000000",
        "summary Initial commit",
        "filename example.txt",
        "\tHello world",
        f"{BOB_COMMIT} 2 2 1",
        "author Bob Smith",
        "author-mail <bob@example.com>",
        "committer-time 1700100000",
        "summary Update farewell line",
        "filename example.txt",
        "\tGoodbye world",
    ])
    assert parse_porcelain(output, ["author", "committer-time"]) == [
        ("Alice Doe", 1700000000),
        ("Bob Smith", 1700100000),
    ]


def test_parse_repeats_state_for_each_content_line():
    lines = [
        f"{ALICE_COMMIT} 1 1 2",
        "author Alice Doe",
        "committer-time 1700000000",
        "filename example.txt",
        "\tLine one",
        "\tLine two",
        f"{BOB_COMMIT} 3 3 1",
        "author Bob Smith",
        "committer-time 1700100000",
        "filename example.txt",
        "\tLine three",
    ]
    assert parse_porcelain(lines, ["commit", "author", "committer-time"]) == [
        (ALICE_COMMIT, "Alice Doe", 1700000000),
        (ALICE_COMMIT, "Alice Doe", 1700000000),
        (BOB_COMMIT, "Bob Smith", 1700100000),
    ]


def test_parse_author_mail_and_time(line_porcelain):
    rows = parse_porcelain(line_porcelain, ["author", "author-mail", "committer-time"])
    assert rows == [
        ("Alice Doe", "alice@example.com", 1700000000),
        ("Alice Doe", "alice@example.com", 1700000000),
        ("Bob Smith", "bob@example.com", 1700100000),
    ]


def test_parse_commit_and_boundary(line_porcelain):
    rows = parse_porcelain(line_porcelain, ["commit", "boundary"])
    assert rows == [(ALICE_COMMIT, 1), (ALICE_COMMIT, 1), (BOB_COMMIT, 0)]


def test_parse_accepts_string(line_porcelain):
    rows = parse_porcelain("\n".join(line_porcelain) + "\n", ["author"])
    assert rows == [("Alice Doe",), ("Alice Doe",), ("Bob Smith",)]


def test_content_lines_are_not_metadata(line_porcelain):
    # Bob's line reads "author Mallory" but is file content
    rows = list(iter_blame_rows(line_porcelain))
    assert len(rows) == 3
    assert rows[2].author == "Bob Smith"


def test_plain_porcelain_reuses_commit_metadata(plain_porcelain, line_porcelain):
    assert list(iter_blame_rows(plain_porcelain)) == list(iter_blame_rows(line_porcelain))


def test_boundary_marker_is_stripped():
    rows = list(iter_blame_rows([f"^{ALICE_COMMIT} 1 1 1", "author Alice", "\tx"]))
    assert rows[0].commit == ALICE_COMMIT


def test_missing_metadata_defaults():
    rows = list(iter_blame_rows([f"{ALICE_COMMIT} 1 1 1", "\tx"]))
    assert rows == [BlameRow(commit=ALICE_COMMIT)]
    assert rows[0].committer_time == 0
    assert rows[0].boundary is False


def test_malformed_committer_time_is_ignored():
    rows = list(iter_blame_rows([f"{ALICE_COMMIT} 1 1 1", "committer-time soon", "\tx"]))
    assert rows[0].committer_time == 0


def test_empty_input():
    assert parse_porcelain([], ["author"]) == []
    assert parse_porcelain("", ["author"]) == []


def test_unknown_field():
    with pytest.raises(ValueError, match="summary"):
        parse_porcelain([], ["author", "summary"])


# ============================================================================
# RENDERING
# ============================================================================

def test_render_then_parse_preserves_rows(line_porcelain):
    rows = list(iter_blame_rows(line_porcelain))
    assert list(iter_blame_rows(render_porcelain(rows))) == rows


def test_render_porcelain_layout():
    lines = render_porcelain([BlameRow(commit=BOB_COMMIT, author="Bob", committer_time=5)])
    assert lines == [f"{BOB_COMMIT} 1 1 1", "author Bob", "committer-time 5", "\t"]
