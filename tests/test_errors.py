import pytest

from chatmigrator.errors import DbError, UnreachableCodeError


def test_reconcilable_message():
    assert str(DbError("boom", True)) == "boom - is reconscilable"


def test_not_reconcilable_message():
    assert str(DbError("boom", False)) == "boom - is not reconscilable"


def test_wraps_exception_text():
    cause = ValueError("bad value")
    error = DbError(cause, reconcilable=False)
    assert error.err is cause
    assert str(error).startswith("bad value - ")
    assert error.reconcilable is False


def test_db_error_can_be_raised_and_caught():
    error = DbError("lost connection", reconcilable=True)
    assert error.reconcilable is True
    assert str(error) == "lost connection - is reconscilable"
    with pytest.raises(DbError) as info:
        raise error
    assert info.value is error


def test_unreachable_default_message():
    assert str(UnreachableCodeError()) == "this could should be unreachable"


def test_unreachable_custom_message():
    error = UnreachableCodeError("elsewhere")
    assert str(error) == "elsewhere"
    with pytest.raises(RuntimeError, match="elsewhere"):
        raise error