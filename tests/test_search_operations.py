"""
Search tools: text search, file search, find-and-replace, duplicates
"""

import json

import pytest


@pytest.fixture
def tree(make_file, tmp_path):
    """Small source tree with one hidden and one binary-looking file."""
    make_file("app.py", "import os\n\ndef main():\n    print('TODO: wire up')\n")
    make_file("lib/util.py", "def helper():\n    return 'todo later'\n")
    make_file("lib/notes.md", "nothing to see\n")
    make_file(".cache/stale.py", "TODO hidden\n")
    make_file("image.png", "TODO not really an image\n")
    return tmp_path


def _payload(text):
    return json.loads(text.split("\n\n", 2)[2])


# ==============================================================================
# search_text
# ==============================================================================


def test_search_text_finds_matches_case_insensitive(call, tree):
    text = call("search_text", pattern="todo", directory=str(tree))

    assert text.startswith('Text search results for "todo":\n\nFound 2 matches in 3 files\n\n')
    assert f"{tree}/app.py:4:12\n" in text
    assert '  Match: "TODO"' in text
    assert f"{tree}/lib/util.py:2:13\n" in text


def test_search_text_case_sensitive(call, tree):
    text = call("search_text", pattern="TODO", directory=str(tree), case_sensitive=True)

    assert "Found 1 matches" in text
    assert "util.py" not in text


def test_search_text_context_lines(call, tree):
    text = call("search_text", pattern="def main", directory=str(tree), context_lines=1)

    assert "  Context:\n    \n    def main():\n        print('TODO: wire up')\n" in text


def test_search_text_whole_word(call, make_file, tmp_path):
    make_file("w.txt", "cat concat catalog cat\n")

    text = call("search_text", pattern="cat", directory=str(tmp_path), whole_word=True)

    assert "Found 2 matches" in text


def test_search_text_respects_max_results(call, make_file, tmp_path):
    make_file("many.txt", "x\n" * 20)

    text = call("search_text", pattern="x", directory=str(tmp_path), max_results=5)

    assert "Found 5 matches in 1 files" in text


def test_search_text_file_and_exclude_patterns(call, tree):
    text = call("search_text", pattern="def", directory=str(tree), file_pattern="*.py", exclude_pattern="lib/*")

    assert "Found 1 matches in 1 files" in text
    assert "app.py" in text


def test_search_text_non_recursive(call, tree):
    text = call("search_text", pattern="todo", directory=str(tree), recursive=False)

    assert "Found 1 matches in 1 files" in text


def test_search_text_invalid_regex(call, tree):
    text = call("search_text", pattern="(unclosed", directory=str(tree))

    assert text.startswith("Error executing tool search_text: InvalidSpec")


# ==============================================================================
# search_files
# ==============================================================================


def test_search_files_by_glob(call, tree):
    text = call("search_files", pattern="*.py", directory=str(tree))

    assert text.startswith('File search results for "*.py":\n\nFound 2 items\n\n')
    paths = sorted(item["path"] for item in _payload(text))
    assert paths == [f"{tree}/app.py", f"{tree}/lib/util.py"]


def test_search_files_directories_only(call, tree):
    text = call("search_files", pattern="*", directory=str(tree), type="directory")

    items = _payload(text)
    assert [item["path"] for item in items] == [f"{tree}/lib"]
    assert "size" not in items[0]


def test_search_files_include_hidden(call, tree):
    text = call("search_files", pattern="*.py", directory=str(tree), include_hidden=True)

    assert "Found 3 items" in text


def test_search_files_rejects_unknown_type(call, tree):
    text = call("search_files", pattern="*", directory=str(tree), type="symlink")

    assert text.startswith("Error executing tool search_files: InvalidSpec")


# ==============================================================================
# find_and_replace
# ==============================================================================


def test_find_and_replace_dry_run(call, tree):
    text = call("find_and_replace", find_pattern="todo", replace_with="DONE", directory=str(tree))

    assert text.startswith("Find and Replace Results:\n\nWould replace 2 occurrences in 2 files\n\n")
    results = _payload(text)
    assert all("preview" in entry for entry in results)
    assert (tree / "app.py").read_text().count("TODO") == 1


def test_find_and_replace_applies(call, tree):
    text = call(
        "find_and_replace",
        find_pattern="todo",
        replace_with="DONE",
        directory=str(tree),
        file_pattern="*.py",
        dry_run=False,
    )

    assert "Replaced 2 occurrences in 2 files" in text
    assert "DONE: wire up" in (tree / "app.py").read_text()
    assert "DONE later" in (tree / "lib" / "util.py").read_text()
    assert "preview" not in text
    # hidden and binary-looking files are left alone
    assert (tree / ".cache" / "stale.py").read_text() == "TODO hidden\n"
    assert (tree / "image.png").read_text() == "TODO not really an image\n"


def test_find_and_replace_preview_shows_change(call, make_file, tmp_path):
    make_file("p.txt", "alpha\nbeta\n")

    text = call("find_and_replace", find_pattern="beta", replace_with="gamma", directory=str(tmp_path))

    preview = _payload(text)[0]["preview"]
    assert "-beta" in preview
    assert "+gamma" in preview


def test_find_and_replace_group_reference(call, make_file, tmp_path):
    path = make_file("v.txt", "version=1.2\n")

    call(
        "find_and_replace",
        find_pattern=r"version=(\d+)\.(\d+)",
        replace_with="version=$2.$1",
        directory=str(tmp_path),
        dry_run=False,
    )

    assert path.read_text() == "version=2.1\n"


def test_find_and_replace_backslashes_are_literal(call, make_file, tmp_path):
    path = make_file("paths.txt", "root=C:/tmp\n")

    text = call(
        "find_and_replace",
        find_pattern="C:/tmp",
        replace_with="C:\\new\\dir",
        directory=str(tmp_path),
        dry_run=False,
    )

    assert "Replaced 1 occurrences in 1 files" in text
    assert path.read_text() == "root=C:\\new\\dir\n"


def test_find_and_replace_max_files(call, make_file, tmp_path):
    for n in range(5):
        make_file(f"f{n}.txt", "hit\n")

    text = call("find_and_replace", find_pattern="hit", replace_with="x", directory=str(tmp_path), max_files=2)

    assert "in 2 files" in text


# ==============================================================================
# search_duplicates
# ==============================================================================


def test_duplicates_by_content(call, make_file, tmp_path):
    make_file("a.txt", "same")
    make_file("sub/b.txt", "same")
    make_file("c.txt", "different")

    text = call("search_duplicates", directory=str(tmp_path))

    assert text.startswith("Duplicate search results (method: content):\n\nFound 1 duplicate groups\n\n")
    groups = list(_payload(text).values())
    assert groups == [[f"{tmp_path}/a.txt", f"{tmp_path}/sub/b.txt"]]


def test_duplicates_by_name(call, make_file, tmp_path):
    make_file("one/readme.md", "x")
    make_file("two/readme.md", "y")

    text = call("search_duplicates", directory=str(tmp_path), method="name")

    assert "readme.md" in _payload(text)


def test_duplicates_min_size(call, make_file, tmp_path):
    make_file("a.txt", "ab")
    make_file("b.txt", "ab")

    text = call("search_duplicates", directory=str(tmp_path), method="size", min_size=10)

    assert "Found 0 duplicate groups" in text
