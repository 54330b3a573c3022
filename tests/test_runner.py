"""Tests for the per-target operation runner."""

from lab_hardener.exceptions import OperationSkipped, PermanentOperationError
from lab_hardener.runner import OperationRunner


def make_runner(retries=2):
    delays = []
    return OperationRunner(retries=retries, retry_delay=1.0, sleep=delays.append), delays


def test_all_targets_succeed():
    runner, delays = make_runner()
    summary = runner.run("double", [1, 2, 3], lambda x: x * 2)

    assert [r.output for r in summary.results] == [2, 4, 6]
    assert summary.ok
    assert summary.success_rate == 100
    assert delays == []


def test_transient_failure_retried_with_backoff():
    runner, delays = make_runner(retries=2)
    calls = []

    def flaky(target):
        calls.append(target)
        if len(calls) < 3:
            raise ConnectionError("reset by peer")
        return "done"

    result = runner.run("flaky", ["host"], flaky).results[0]

    assert result.success
    assert result.attempts == 3
    assert result.error is None
    assert delays == [1.0, 2.0]


def test_retries_exhausted():
    runner, delays = make_runner(retries=1)

    def broken(target):
        raise RuntimeError(f"{target} unreachable")

    summary = runner.run("broken", ["a", "b"], broken)

    assert summary.failed == 2
    assert summary.success_rate == 0
    assert all(r.attempts == 2 for r in summary.results)
    assert summary.get("a").error == "a unreachable"
    assert delays == [1.0, 1.0]


def test_failure_does_not_stop_other_targets():
    runner, _ = make_runner(retries=0)

    def work(target):
        if target == "bad":
            raise RuntimeError("boom")
        return target

    summary = runner.run("work", ["good", "bad", "also-good"], work)
    assert [r.status for r in summary.results] == ["ok", "failed", "ok"]
    assert summary.success_rate == 66


def test_permanent_error_not_retried():
    runner, delays = make_runner(retries=3)

    def reject(target):
        raise PermanentOperationError("checks failed", output={"failed": 2})

    result = runner.run("validate", ["h"], reject).results[0]

    assert not result.success
    assert result.attempts == 1
    assert result.output == {"failed": 2}
    assert delays == []


def test_skipped_counts_as_success():
    runner, _ = make_runner()

    def skip(target):
        raise OperationSkipped("already there")

    summary = runner.run("snapshot", [100], skip)

    assert summary.ok
    assert summary.skipped == 1
    assert summary.succeeded == 0
    assert summary.results[0].status == "skipped"
    assert summary.to_dict()["results"][0]["output"] == "already there"


def test_key_names_targets():
    runner, _ = make_runner()
    summary = runner.run("op", [{"name": "x"}], lambda t: None, key=lambda t: t["name"])
    assert summary.get("x") is not None
    assert summary.get("missing") is None
