import pytest

from pgwire.naming import to_exported, to_upper, underscore


@pytest.mark.parametrize(
    "s, wanted",
    [
        ("Megacolumn", "megacolumn"),
        ("MegaColumn", "mega_column"),
        ("MegaColumn_Id", "mega_column__id"),
        ("MegaColumn_id", "mega_column_id"),
    ],
)
def test_underscore(s, wanted):
    assert underscore(s) == wanted


def test_underscore_keeps_acronyms_together():
    assert underscore("ID") == "id"


def test_to_upper():
    assert to_upper("select 1") == "SELECT 1"
    assert to_upper("ABC") == "ABC"


def test_to_upper_leaves_non_ascii():
    assert to_upper("é_x") == "é_X"


def test_to_exported():
    assert to_exported("foo") == "Foo"
    assert to_exported("Foo") == "Foo"
    assert to_exported("") == ""