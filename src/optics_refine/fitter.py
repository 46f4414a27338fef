"""Merging of checkpointed accumulators and per-group aberration fits."""

import logging
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from optics_refine.checkpoint import CheckpointStore
from optics_refine.config import TiltEstimationConfig
from optics_refine.diagnostics import DiagnosticsWriter
from optics_refine.fitting import (
    DegenerateFitError,
    fit_odd_zernike,
    fit_tilt_shift,
    optimize_odd_zernike,
    optimize_tilt_shift,
)
from optics_refine.physics import half_spectrum_shape, pixel_frequencies
from optics_refine.registry import OpticsGroupRegistry
from optics_refine.types import AccumulatorPair, FitResult
from optics_refine.zernike import extract_tilt_shift, remove_tilt

logger = logging.getLogger(__name__)

__all__ = ['AberrationFitter', 'normalize_accumulator']


def normalize_accumulator(pair: AccumulatorPair) -> np.ndarray:
    """Empirical phase field xy / w where w > 0, zero elsewhere."""
    out = np.zeros_like(pair.xy)
    valid = pair.w > 0.0
    out[valid] = pair.xy[valid] / pair.w[valid]
    return out


class AberrationFitter:
    """
    Fits the antisymmetric aberration of each optics group from the sum of
    all checkpointed accumulator pairs of that group.
    """

    def __init__(
        self,
        registry: OpticsGroupRegistry,
        store: CheckpointStore,
        image_size: int,
        config: TiltEstimationConfig,
        diagnostics: Optional[DiagnosticsWriter] = None,
    ):
        self.registry = registry
        self.store = store
        self.image_size = image_size
        self.shape = half_spectrum_shape(image_size)
        self.config = config
        self.diagnostics = diagnostics

    def merge(self, group: int, batch_ids: Iterable[str]) -> Optional[AccumulatorPair]:
        """
        Sum the pairs of all batches that contributed to a group.

        Returns:
            The group accumulator, or None if no batch contributed
        """
        total = None
        contributors = 0
        for batch_id in batch_ids:
            pair = self.store.read(batch_id, group)
            if pair is None:
                continue
            if pair.xy.shape != self.shape:
                raise ValueError(
                    f"Checkpoint of batch {batch_id}, optics group {group} has shape "
                    f"{pair.xy.shape}, expected {self.shape}"
                )
            total = pair if total is None else total + pair
            contributors += 1

        logger.debug(f"Optics group {group}: merged {contributors} batches")
        return total

    def fit_mask(self, weight: np.ndarray, group: int) -> np.ndarray:
        """
        Fit weights: accumulated weight inside the band [kmin, Nyquist),
        with the optional exclusion ring zeroed.
        """
        size = self.image_size
        x, y = pixel_frequencies(size)
        radius = np.sqrt(x * x + y * y)

        kmin_px = self.registry.ang_to_pix(self.config.kmin, size, group)
        band = (radius >= kmin_px) & (radius < size / 2)
        mask = np.where(band, weight, 0.0)

        if self.config.has_exclusion_ring:
            with np.errstate(divide="ignore"):
                resolution = self.registry.pix_to_ang(radius, size, group)
            ring = (resolution > self.config.xring0) & (resolution <= self.config.xring1)
            mask[ring] = 0.0
            logger.debug(
                f"Optics group {group}: excluded {int(ring.sum())} pixels between "
                f"{self.config.xring0} and {self.config.xring1} A"
            )

        return mask

    def fit(self, group: int, batch_ids: Sequence[str]) -> Optional[FitResult]:
        """
        Fit the aberration of one optics group.

        Returns:
            FitResult, or None if no batch contributed to the group

        Raises:
            DegenerateFitError: If the masked system has no unique solution
        """
        acc = self.merge(group, batch_ids)
        if acc is None:
            logger.info(f"Optics group {group}: no contributing batches, skipped")
            return None

        optics = self.registry.group(group)
        weight = self.fit_mask(acc.w, group)
        field = normalize_accumulator(acc)
        phase = np.angle(field)

        if self.config.uses_polynomial_model:
            n_max = self.config.odd_aberr_max_n
            coeffs, linear_fit = fit_odd_zernike(phase, weight, optics.pixel_size, n_max)
            coeffs, fit = optimize_odd_zernike(field, weight, optics.pixel_size, n_max, coeffs)
            shift_x, shift_y, tilt_x, tilt_y = extract_tilt_shift(
                coeffs, optics.spherical_aberration, optics.wavelength
            )
            # The tilt is stored separately; keep it out of the odd vector
            residual = remove_tilt(coeffs, tilt_x, tilt_y,
                                   optics.spherical_aberration, optics.wavelength)
            result = FitResult(group, shift_x, shift_y, tilt_x, tilt_y, residual, fit)
        else:
            params, linear_fit = fit_tilt_shift(
                phase, weight, optics.spherical_aberration, optics.wavelength, optics.pixel_size
            )
            params, fit = optimize_tilt_shift(
                field, weight, optics.spherical_aberration, optics.wavelength,
                optics.pixel_size, params,
            )
            result = FitResult(group, *params, None, fit)

        logger.info(
            f"Optics group {group}: beam tilt ({result.tilt_x:.4f}, {result.tilt_y:.4f}) mrad, "
            f"shift ({result.shift_x:.4f}, {result.shift_y:.4f}) A"
        )

        if self.diagnostics is not None:
            self.diagnostics.write_group(group, weight, phase, linear_fit, fit,
                                         n_max=self.config.odd_aberr_max_n)

        return result

    def fit_all(self, batch_ids: Sequence[str]) -> Dict[int, FitResult]:
        """
        Fit every optics group; degenerate groups are reported and skipped.

        Returns:
            Mapping of group id to FitResult for the groups that were fitted
        """
        results = {}
        for group in self.registry.group_ids:
            try:
                result = self.fit(group, batch_ids)
            except DegenerateFitError as e:
                logger.warning(f"Optics group {group}: fit is degenerate ({e}), skipped")
                continue
            if result is not None:
                results[group] = result
        return results

    def fitted_table(self, batch_ids: Sequence[str]) -> pd.DataFrame:
        """Optics table with the fitted values of all groups written in."""
        results: List[FitResult] = list(self.fit_all(batch_ids).values())
        return self.registry.with_fit_results(results)
