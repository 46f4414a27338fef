"""Per-batch accumulation of beam tilt phase differences.

For every particle, the observed half spectrum is compared with the
CTF-weighted prediction; the products are summed per optics group:

    xy += ctf * conj(pred) * obs
    w  += ctf^2 * |pred|^2

so that xy / w estimates exp(i * phi) of the antisymmetric aberration.
Particles are split across worker threads, each owning private buffers
per group; the buffers are summed only after all workers finish.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Sequence

import numpy as np
import pandas as pd

from optics_refine.checkpoint import CheckpointStore
from optics_refine.constants import OPTICS_GROUP
from optics_refine.physics import half_spectrum_shape
from optics_refine.registry import OpticsGroupRegistry
from optics_refine.types import AccumulatorPair

logger = logging.getLogger(__name__)

__all__ = ['TiltAccumulator', 'update_tilt_shift']


def update_tilt_shift(
    predicted: np.ndarray,
    observed: np.ndarray,
    ctf: np.ndarray,
    xy_dest: np.ndarray,
    w_dest: np.ndarray,
) -> None:
    """
    Add one particle's contribution to an accumulator pair, in place.

    Args:
        predicted: Idealized prediction without CTF (s, s//2 + 1), complex
        observed: Observed half spectrum (s, s//2 + 1), complex
        ctf: Particle CTF (s, s//2 + 1), real
        xy_dest: Complex phase-difference sum to update
        w_dest: Real weight sum to update
    """
    xy_dest += ctf * np.conj(predicted) * observed
    w_dest += ctf * ctf * (predicted.real**2 + predicted.imag**2)


class TiltAccumulator:
    """Reduces one batch of particles into per-group accumulator pairs."""

    def __init__(
        self,
        registry: OpticsGroupRegistry,
        store: CheckpointStore,
        image_size: int,
        num_workers: int = 1,
    ):
        if num_workers < 1:
            raise ValueError(f"num_workers must be positive, got {num_workers}")
        self.registry = registry
        self.store = store
        self.image_size = image_size
        self.shape = half_spectrum_shape(image_size)
        self.num_workers = num_workers

    def accumulate(
        self,
        batch_id: str,
        particles: pd.DataFrame,
        observed: Sequence[np.ndarray],
        predicted: Sequence[np.ndarray],
    ) -> Dict[int, AccumulatorPair]:
        """
        Sum the contributions of all particles of a batch per optics group.

        Args:
            batch_id: Batch identity, used in error messages
            particles: Particle rows of the batch
            observed: Observed half spectra, one per particle row
            predicted: Predicted half spectra (without CTF), one per particle row

        Returns:
            Mapping of group id to its summed pair

        Raises:
            OpticsGroupError: If a particle references an undefined group
            ValueError: If the image lists do not match the particles
        """
        self._validate_inputs(batch_id, particles, observed, predicted)

        groups = self.registry.groups_present(particles)
        group_index = {g: i for i, g in enumerate(groups)}
        rows = [row for _, row in particles.iterrows()]

        chunks = [c for c in np.array_split(np.arange(len(rows)), self.num_workers) if len(c)]
        # One private pair per (worker, group)
        buffers: List[List[AccumulatorPair]] = [
            [AccumulatorPair.zeros(self.image_size) for _ in groups] for _ in chunks
        ]

        def work(worker: int) -> None:
            own = buffers[worker]
            for p in chunks[worker]:
                row = rows[p]
                pair = own[group_index[int(row[OPTICS_GROUP])]]
                ctf = self.registry.ctf_image(row, self.image_size)
                update_tilt_shift(predicted[p], observed[p], ctf, pair.xy, pair.w)

        if len(chunks) > 1:
            with ThreadPoolExecutor(max_workers=len(chunks)) as executor:
                # list() re-raises the first worker exception
                list(executor.map(work, range(len(chunks))))
        elif chunks:
            work(0)

        sums = {}
        for g, ci in group_index.items():
            total = AccumulatorPair.zeros(self.image_size)
            for own in buffers:
                total = total + own[ci]
            sums[g] = total

        logger.debug(
            f"Accumulated {len(rows)} particles of batch {batch_id} over {len(chunks)} workers "
            f"into optics groups {groups}"
        )
        return sums

    def process_batch(
        self,
        batch_id: str,
        particles: pd.DataFrame,
        observed: Sequence[np.ndarray],
        predicted: Sequence[np.ndarray],
    ) -> List[int]:
        """
        Accumulate a batch and checkpoint one pair per optics group present.

        Returns:
            Ids of the groups written
        """
        sums = self.accumulate(batch_id, particles, observed, predicted)
        for group, pair in sums.items():
            self.store.write(batch_id, group, pair)

        logger.info(f"Batch {batch_id}: checkpointed {len(particles)} particles in groups {list(sums)}")
        return list(sums)

    def is_finished(self, batch_id: str, particles: pd.DataFrame) -> bool:
        """True if every group present in the batch has been checkpointed."""
        return self.store.is_batch_finished(batch_id, self.registry.groups_present(particles))

    def _validate_inputs(
        self,
        batch_id: str,
        particles: pd.DataFrame,
        observed: Sequence[np.ndarray],
        predicted: Sequence[np.ndarray],
    ) -> None:
        self.registry.validate_particles(particles, context=f"batch {batch_id}")

        if len(observed) != len(particles) or len(predicted) != len(particles):
            raise ValueError(
                f"Batch {batch_id}: got {len(observed)} observed and {len(predicted)} predicted "
                f"images for {len(particles)} particles"
            )

        for p, (obs, pred) in enumerate(zip(observed, predicted)):
            if obs.shape != self.shape or pred.shape != self.shape:
                raise ValueError(
                    f"Batch {batch_id}, particle {p}: expected half spectra of shape "
                    f"{self.shape}, got {obs.shape} and {pred.shape}"
                )
