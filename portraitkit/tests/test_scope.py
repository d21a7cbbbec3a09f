import pytest

from portraitkit.scope import CancelScope, OperationCancelled


def test_check_passes_until_cancelled():
    scope = CancelScope("p1")
    scope.check()
    assert not scope.cancelled
    scope.cancel()
    scope.cancel()
    assert scope.cancelled
    with pytest.raises(OperationCancelled):
        scope.check()


def test_generations_increase():
    a, b = CancelScope("a"), CancelScope("b")
    assert b.generation > a.generation
    assert "live" in repr(a)
