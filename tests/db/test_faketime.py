import random

import pytest

from fakes import FakeRunner
from pgrig.db.faketime import (
    REAL_SUFFIX,
    FaketimeBinding,
    FaultInjector,
    rand_factor,
    unwrap,
    wrap,
    wrapper_script,
)

PG = "/home/pgrig/pginstall/bin/postgres"
REAL = PG + REAL_SUFFIX


def _writes(runner):
    return [c for c in runner.calls if c == f"put {PG}"]


def test_wrapper_script_execs_the_real_binary_at_rate():
    script = wrapper_script(REAL, 0, 2.5)
    assert script.startswith("#!/bin/bash")
    assert 'faketime -m -f "+0s x2.5"' in script
    assert REAL in script
    assert script.rstrip().endswith('"$@"')


def test_wrapper_script_negative_offset():
    assert '"-30s x1.0"' in wrapper_script(REAL, -30, 1.0)


def test_wrap_moves_binary_aside_and_installs_wrapper():
    runner = FakeRunner("n1", files={PG})

    wrap(runner, PG, 0, 2.0, user="pgrig")

    assert REAL in runner.files
    assert runner.ran("mv") == [f"mv {PG} {REAL}"]
    assert len(_writes(runner)) == 1
    assert "x2.0" in runner.written[PG]
    assert REAL in runner.written[PG]
    assert runner.ran("chmod") == [f"chmod a+x {PG}"]


def test_wrap_twice_keeps_real_binary_and_last_rate_wins():
    runner = FakeRunner("n1", files={PG})

    wrap(runner, PG, 0, 2.0)
    wrap(runner, PG, 0, 0.5)

    # the real binary is only moved once, never the wrapper over it
    assert len(runner.ran("mv")) == 1
    assert len(_writes(runner)) == 2
    assert "x0.5" in runner.written[PG] and "x2.0" not in runner.written[PG]


def test_wrap_then_unwrap_restores_the_binary():
    runner = FakeRunner("n1", files={PG})

    wrap(runner, PG, 0, 3.0)
    assert unwrap(runner, PG) is True

    assert REAL not in runner.files
    assert PG in runner.files
    assert runner.ran("mv")[-1] == f"mv -f {REAL} {PG}"


def test_unwrap_unwrapped_binary_is_noop():
    runner = FakeRunner("n1", files={PG})

    assert unwrap(runner, PG) is False
    assert runner.ran("mv") == []


def test_binding_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        FaketimeBinding(path=PG, rate=0)
    with pytest.raises(ValueError):
        FaketimeBinding(path=PG, rate=-1.5)


@pytest.mark.parametrize("ratio", [2.0, 0.5, 10.0])
def test_rand_factor_stays_inside_ratio_band(ratio):
    rng = random.Random(42)
    lo, hi = sorted((1 / ratio, ratio))
    for _ in range(200):
        assert lo <= rand_factor(ratio, rng) <= hi


def test_rand_factor_ratio_one_is_realtime():
    assert rand_factor(1.0, random.Random(0)) == 1.0


def test_rand_factor_rejects_non_positive():
    with pytest.raises(ValueError):
        rand_factor(0)


def test_injector_reconcile_tracks_effective_binding():
    runner = FakeRunner("n2", files={PG})
    inj = FaultInjector(user="pgrig")

    inj.reconcile(runner, [FaketimeBinding(path=PG, rate=1.7)])
    assert inj.effective("n2", PG).rate == 1.7

    inj.reconcile(runner, [FaketimeBinding(path=PG, enabled=False)])
    assert inj.effective("n2", PG) is None
    assert REAL not in runner.files


def test_injector_disabled_binding_on_clean_node_touches_nothing():
    runner = FakeRunner("n3", files={PG})

    FaultInjector().reconcile(runner, [FaketimeBinding(path=PG, enabled=False)])

    assert runner.ran("mv") == []
    assert runner.written == {}
