from __future__ import annotations

import threading

import pytest

from strata.runtime.oracle import RandomnessOracle


@pytest.mark.parametrize("seed", [None, 0, 1, 42, 2024])
def test_bounds_hold_for_any_seed(seed) -> None:
    oracle = RandomnessOracle(seed)

    assert not any(oracle.resolve(0) for _ in range(500))
    assert all(oracle.resolve(1000) for _ in range(500))


def test_pass_rate_tracks_threshold() -> None:
    oracle = RandomnessOracle(seed=1234)
    trials = 20000

    passed = sum(oracle.resolve(250) for _ in range(trials))

    assert abs(passed / trials - 0.25) < 0.02


def test_same_seed_reproduces_outcomes() -> None:
    first = RandomnessOracle(seed=7)
    second = RandomnessOracle(seed=7)

    assert [first.resolve(500) for _ in range(200)] == [second.resolve(500) for _ in range(200)]


def test_draw_reports_threshold_and_index() -> None:
    oracle = RandomnessOracle(seed=3)

    first = oracle.draw(1000)
    second = oracle.draw(0)

    assert (first.threshold, first.passed, first.index) == (1000, True, 1)
    assert (second.threshold, second.passed, second.index) == (0, False, 2)
    assert oracle.draws == 2


@pytest.mark.parametrize("threshold", [-1, 1001, 2.5, "500", True])
def test_invalid_thresholds_are_rejected(threshold) -> None:
    with pytest.raises(ValueError):
        RandomnessOracle(seed=1).resolve(threshold)


def test_concurrent_draws_are_counted_once_each() -> None:
    oracle = RandomnessOracle(seed=11)

    def worker() -> None:
        for _ in range(250):
            oracle.resolve(500)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert oracle.draws == 1000
