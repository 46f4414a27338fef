"""Tests for tilt accumulation."""

import numpy as np
import pandas as pd
import pytest

from conftest import BOX_SIZE, make_particles, simulate
from optics_refine.accumulator import TiltAccumulator, update_tilt_shift
from optics_refine.checkpoint import MemoryCheckpointStore
from optics_refine.registry import OpticsGroupError


def test_update_tilt_shift():
    """Test a single contribution recovers the phase difference."""
    shape = (8, 5)
    pred = np.full(shape, 2.0 + 0.0j)
    obs = pred * np.exp(0.5j)
    ctf = np.full(shape, -0.5)
    xy = np.zeros(shape, dtype=complex)
    w = np.zeros(shape)

    update_tilt_shift(pred, obs * ctf, ctf, xy, w)

    np.testing.assert_allclose(w, 1.0)
    np.testing.assert_allclose(xy / w, np.exp(0.5j))


def test_accumulate_groups(registry):
    particles = pd.concat(
        [make_particles(4, group=1), make_particles(3, group=2, seed=1)], ignore_index=True
    )
    observed, predicted = simulate(registry, particles, tilt=(1.0, 0.5))
    accumulator = TiltAccumulator(registry, MemoryCheckpointStore(), BOX_SIZE)

    sums = accumulator.accumulate("b", particles, observed, predicted)

    assert sorted(sums) == [1, 2]
    for pair in sums.values():
        assert pair.xy.shape == (BOX_SIZE, BOX_SIZE // 2 + 1)
        assert np.all(pair.w >= 0.0)
        assert pair.w.sum() > 0.0


@pytest.mark.parametrize("num_workers", [2, 3, 8, 50])
def test_worker_count_does_not_change_result(registry, particles, num_workers):
    """Test per-worker buffers sum to the single-worker result."""
    observed, predicted = simulate(registry, particles, tilt=(2.0, -1.0))
    serial = TiltAccumulator(registry, MemoryCheckpointStore(), BOX_SIZE, num_workers=1)
    parallel = TiltAccumulator(registry, MemoryCheckpointStore(), BOX_SIZE, num_workers=num_workers)

    expected = serial.accumulate("b", particles, observed, predicted)[1]
    result = parallel.accumulate("b", particles, observed, predicted)[1]

    np.testing.assert_allclose(result.xy, expected.xy, rtol=1e-12, atol=1e-12)
    np.testing.assert_allclose(result.w, expected.w, rtol=1e-12, atol=1e-12)


def test_process_batch_writes_per_group(registry):
    store = MemoryCheckpointStore()
    particles = pd.concat(
        [make_particles(2, group=2), make_particles(2, group=1, seed=1)], ignore_index=True
    )
    observed, predicted = simulate(registry, particles)
    accumulator = TiltAccumulator(registry, store, BOX_SIZE, num_workers=2)

    assert not accumulator.is_finished("b", particles)
    written = accumulator.process_batch("b", particles, observed, predicted)

    assert written == [1, 2]
    assert accumulator.is_finished("b", particles)


def test_process_batch_only_writes_groups_present(registry, particles):
    store = MemoryCheckpointStore()
    observed, predicted = simulate(registry, particles)
    TiltAccumulator(registry, store, BOX_SIZE).process_batch("b", particles, observed, predicted)

    assert store.exists("b", 1)
    assert not store.exists("b", 2)


def test_undefined_group_writes_nothing(registry):
    """Test an undefined group aborts the batch before any checkpoint is written."""
    store = MemoryCheckpointStore()
    particles = pd.concat([make_particles(2, group=1), make_particles(1, group=4)],
                          ignore_index=True)
    shape = (BOX_SIZE, BOX_SIZE // 2 + 1)
    images = [np.ones(shape, dtype=complex)] * 3

    with pytest.raises(OpticsGroupError, match=r"\[4\]"):
        TiltAccumulator(registry, store, BOX_SIZE).process_batch("b", particles, images, images)
    assert not store.exists("b", 1)


def test_image_count_mismatch(registry, particles):
    observed, predicted = simulate(registry, particles)
    accumulator = TiltAccumulator(registry, MemoryCheckpointStore(), BOX_SIZE)
    with pytest.raises(ValueError, match="19 observed"):
        accumulator.accumulate("b", particles, observed[:-1], predicted)


def test_image_shape_mismatch(registry, particles):
    observed, predicted = simulate(registry, particles)
    observed[3] = np.ones((BOX_SIZE, BOX_SIZE), dtype=complex)
    accumulator = TiltAccumulator(registry, MemoryCheckpointStore(), BOX_SIZE)
    with pytest.raises(ValueError, match="particle 3"):
        accumulator.accumulate("b", particles, observed, predicted)


def test_invalid_worker_count(registry):
    with pytest.raises(ValueError, match="num_workers"):
        TiltAccumulator(registry, MemoryCheckpointStore(), BOX_SIZE, num_workers=0)
