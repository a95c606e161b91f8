"""Tests for the compensation log used by multi-step writes."""

from __future__ import annotations

from unittest.mock import Mock

import pytest

from shop_ledger.compensation import CompensationLog


def test_compensate_runs_newest_first():
    calls = []
    log = CompensationLog("demo")
    log.record("first", "one", lambda: calls.append("first"))
    log.record("second", "two", lambda: calls.append("second"))

    undone = log.compensate()

    assert undone == ("second", "first")
    assert calls == ["second", "first"]
    assert len(log) == 0
    assert log.compensated_steps == ("second", "first")


def test_compensate_resumes_after_failure():
    """A failing inverse keeps itself and older steps for the next call."""

    first = Mock()
    flaky = Mock(side_effect=[RuntimeError("disk full"), None])
    log = CompensationLog("demo")
    log.record("first", "one", first)
    log.record("second", "two", flaky)

    with pytest.raises(RuntimeError):
        log.compensate()
    assert log.completed_steps == ("first", "second")
    first.assert_not_called()

    assert log.compensate() == ("second", "first")
    first.assert_called_once_with()


def test_compensate_on_empty_log_is_noop():
    assert CompensationLog("demo").compensate() == ()
