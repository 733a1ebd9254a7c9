import pytest

from relayci.errors import ConfigurationError
from relayci.paths import glob_match, matches, validate_globs


@pytest.mark.parametrize(
    "path, pattern, expected",
    [
        ("src/a/b.py", "src/**", True),
        ("main.rs", "**/*.rs", True),
        ("zebra-chain/src/lib.rs", "**/*.rs", True),
        ("docs/readme.md", "*.md", False),
        ("README.md", "*.md", True),
        ("file1.txt", "file?.txt", True),
        ("a/b", "a?b", False),
        ("a.py", "[abc].py", True),
        ("d.py", "[abc].py", False),
        ("d.py", "[!abc].py", True),
        ("a*b", r"a\*b", True),
        ("axb", r"a\*b", False),
        ("/src/a.py", "src/*.py", True),
        ("book/src/SUMMARY.md", "book/**", True),
        ("sub/firebase.json", "**/firebase.json", True),
    ],
)
def test_glob_match(path, pattern, expected):
    assert glob_match(path, pattern) is expected


@pytest.mark.parametrize("bad", ["", "   ", "src/[abc", "trailing\\"])
def test_malformed_globs_are_configuration_errors(bad):
    with pytest.raises(ConfigurationError):
        validate_globs([bad])


def test_no_changed_files_always_triggers():
    assert matches(set(), ["src/**"], ["**/*.md"]) is True


def test_include_globs_need_one_match():
    assert matches({"book/intro.md"}, ["book/**"]) is True
    assert matches({"src/lib.rs"}, ["book/**"]) is False


def test_all_files_ignorable_suppresses_even_when_included():
    changed = {"README.md", "docs/guide.md"}
    assert matches(changed, ["**"], ["**/*.md"]) is False
    assert matches(changed, None, ["**/*.md"]) is False


def test_one_relevant_file_is_enough():
    assert matches({"README.md", "src/lib.rs"}, ["**/*.rs"], ["**/*.md"]) is True
    assert matches({"a.md", "b.rs"}, None, ["*.md"]) is True


def test_no_filters_triggers():
    assert matches({"anything/at/all.txt"}) is True


def test_matches_rejects_bad_globs():
    with pytest.raises(ConfigurationError):
        matches({"a"}, ["[oops"])
