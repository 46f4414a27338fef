"""Beam tilt estimator: resumable accumulation over batches and the final fit."""

import logging
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from tqdm import tqdm

from optics_refine.accumulator import TiltAccumulator
from optics_refine.checkpoint import CheckpointStore, FileCheckpointStore
from optics_refine.config import TiltEstimationConfig
from optics_refine.constants import MICROGRAPH_NAME
from optics_refine.diagnostics import DiagnosticsWriter
from optics_refine.fitter import AberrationFitter
from optics_refine.registry import OpticsGroupRegistry
from optics_refine.types import FitResult

logger = logging.getLogger(__name__)

__all__ = ['TiltEstimator', 'split_batches']

ImageLoader = Callable[[str, pd.DataFrame], Tuple[Sequence[np.ndarray], Sequence[np.ndarray]]]


def split_batches(particles: pd.DataFrame, column: str = MICROGRAPH_NAME) -> Dict[str, pd.DataFrame]:
    """
    Split a particle table into batches sharing one acquisition (micrograph).

    Returns:
        Mapping of batch id to its particle rows, in order of first appearance
    """
    if column not in particles.columns:
        raise ValueError(f"Particle table has no '{column}' column to split batches by")
    return {str(name): rows for name, rows in particles.groupby(column, sort=False)}


class TiltEstimator:
    """
    Estimates beam tilt and odd aberrations per optics group.

    Call `init` once with the run's registry before processing; the
    registry and configuration are then fixed for the estimator's lifetime.
    """

    def __init__(self, config: Optional[TiltEstimationConfig] = None):
        self.config = config if config is not None else TiltEstimationConfig()
        self.ready = False

        self.registry: Optional[OpticsGroupRegistry] = None
        self.store: Optional[CheckpointStore] = None
        self.image_size = 0
        self.accumulator: Optional[TiltAccumulator] = None
        self.fitter: Optional[AberrationFitter] = None

    def init(
        self,
        registry: OpticsGroupRegistry,
        image_size: int,
        store: Optional[CheckpointStore] = None,
    ) -> None:
        """
        Bind the estimator to a registry and image size.

        Args:
            registry: Optics groups of the run
            image_size: Box size s of all observations
            store: Checkpoint store, files under config.output_dir by default
        """
        if image_size <= 0:
            raise ValueError(f"Image size must be positive, got {image_size}")
        if not registry.all_pixel_sizes_identical():
            logger.warning("Optics groups have different pixel sizes; each group is fitted in its own units")

        self.registry = registry
        self.image_size = image_size
        self.store = store if store is not None else FileCheckpointStore(self.config.output_dir)

        diagnostics = None
        if self.config.debug or self.config.diag:
            diagnostics = DiagnosticsWriter(self.config.output_dir, debug=self.config.debug,
                                            diag=self.config.diag)

        self.accumulator = TiltAccumulator(registry, self.store, image_size, self.config.num_workers)
        self.fitter = AberrationFitter(registry, self.store, image_size, self.config, diagnostics)
        self.ready = True

        logger.debug(
            f"Initialized TiltEstimator: size {image_size}, {registry.number_of_groups} optics groups, "
            f"{self.config.num_workers} workers"
        )

    def _require_ready(self, method: str) -> None:
        if not self.ready:
            raise RuntimeError(f"TiltEstimator.{method}: TiltEstimator not initialized")

    def process_batch(
        self,
        batch_id: str,
        particles: pd.DataFrame,
        observed: Sequence[np.ndarray],
        predicted: Sequence[np.ndarray],
    ) -> List[int]:
        """Accumulate one batch and checkpoint its per-group pairs."""
        self._require_ready("process_batch")
        return self.accumulator.process_batch(batch_id, particles, observed, predicted)

    def is_finished(self, batch_id: str, particles: pd.DataFrame) -> bool:
        """True if the batch has already been checkpointed for all its groups."""
        self._require_ready("is_finished")
        return self.accumulator.is_finished(batch_id, particles)

    def parametric_fit(self, batch_ids: Sequence[str]) -> Tuple[Dict[int, FitResult], pd.DataFrame]:
        """
        Fit all optics groups from the checkpoints of the given batches.

        Returns:
            (results per fitted group, optics table with the fitted values)
        """
        self._require_ready("parametric_fit")
        if self.config.verbosity > 0:
            logger.info("Fitting beam tilt ...")

        results = self.fitter.fit_all(batch_ids)
        return results, self.registry.with_fit_results(results.values())

    def run(
        self,
        batches: Mapping[str, pd.DataFrame],
        load_images: ImageLoader,
    ) -> Tuple[Dict[int, FitResult], pd.DataFrame]:
        """
        Accumulate all unfinished batches, then fit.

        Batches whose checkpoints are complete are skipped without loading
        their images, so an interrupted run can simply be started again.

        Args:
            batches: Mapping of batch id to particle rows
            load_images: Returns (observed, predicted) half spectra for a batch

        Returns:
            Same as `parametric_fit`
        """
        self._require_ready("run")

        # Undefined groups anywhere abort before any batch is processed
        for batch_id, particles in batches.items():
            self.registry.validate_particles(particles, context=f"batch {batch_id}")

        pending = [b for b, particles in batches.items() if not self.is_finished(b, particles)]
        skipped = len(batches) - len(pending)
        if skipped and self.config.verbosity > 0:
            logger.info(f"Skipping {skipped} already processed batches")

        for batch_id in tqdm(pending, desc="Accumulating", disable=self.config.verbosity == 0):
            particles = batches[batch_id]
            observed, predicted = load_images(batch_id, particles)
            self.process_batch(batch_id, particles, observed, predicted)

        return self.parametric_fit(list(batches))
