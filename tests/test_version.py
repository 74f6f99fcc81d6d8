import pytest

from slipgate.version import COMMIT, RELEASE_TAG, VERSION, is_dev, version_string


def test_unknown_commit_is_omitted():
    assert version_string("1.2.3", "unknown", "") == "slipgate v1.2.3"


def test_known_commit_is_appended():
    assert version_string("1.2.3", "abc1234", "") == "slipgate v1.2.3 (abc1234)"


def test_release_tag_marks_dev_build():
    result = version_string("2.0.0", "unknown", "dev-abc")
    assert result.endswith("-dev")
    assert result.startswith("slipgate v2.0.0")


def test_dev_with_commit():
    result = version_string("2.0.0", "deadbee", "dev-deadbee")
    assert result == f"slipgate v2.0.0-dev ({'deadbee'})"


def test_defaults_use_module_values():
    assert version_string() == version_string(VERSION, COMMIT, RELEASE_TAG)
    assert VERSION in version_string()


@pytest.mark.parametrize(
    "tag, expected",
    [("", False), ("dev-abc1234", True), ("x", True)],
)
def test_is_dev(tag, expected):
    assert is_dev(tag) is expected