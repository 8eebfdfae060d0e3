import pytest

from igt.core.wildcard import matches, split_patterns


@pytest.mark.parametrize("name, selection, expected", [
    ("basic", "basic", True),
    ("basic", "basic*", True),
    ("basic-render", "basic*,!basic-render*", False),
    ("basic-blit", "basic*,!basic-render*", True),
    ("extended", "basic*", False),
    ("a-subtest", "a-subtest,b-subtest", True),
    ("c-subtest", "a-subtest,b-subtest", False),
    ("engine-rcs0", "engine-[^v]*", True),
    ("engine-vcs0", "engine-[^v]*", False),
    ("first-subtest", "*,!first-subtest", False),
    ("second-subtest", "*,!first-subtest", True),
])
def test_selection(name, selection, expected):
    assert matches(name, selection) is expected


def test_last_matching_pattern_decides():
    assert matches("x", "!x,x")
    assert not matches("x", "x,!x")


def test_split_patterns():
    assert split_patterns("a,!b,c*") == [(False, "a"), (True, "b"), (False, "c*")]
