"""Memoized aberration correction images per optics group and image size.

Entries are computed from a group's coefficients the first time they are
requested and are never invalidated. Coefficients must therefore stay
frozen for the lifetime of a cache; use a new cache after changing them.
"""

import logging
from typing import Dict, Hashable, KeysView, Tuple

import numpy as np

from optics_refine.constants import CORRECTION_KINDS, GAMMA_OFFSET, PHASE
from optics_refine.physics import spatial_frequencies
from optics_refine.zernike import evaluate_even, evaluate_odd

logger = logging.getLogger(__name__)

__all__ = ['CorrectionCache', 'compute_correction']


def compute_correction(group, size: int, kind: str) -> np.ndarray:
    """
    Compute a correction image from a group's current coefficients.

    Args:
        group: OpticsGroup providing pixel size, coefficients and magnification
        size: Box size s
        kind: "phase" for exp(i * odd aberration), "gamma_offset" for the even aberration

    Returns:
        Complex (phase) or real (gamma_offset) (s, s//2 + 1) array
    """
    if kind not in CORRECTION_KINDS:
        raise ValueError(f"Unknown correction kind '{kind}', expected one of {CORRECTION_KINDS}")

    kx, ky = spatial_frequencies(
        size, group.pixel_size, group.mag_matrix if group.has_mag_matrix else None
    )

    if kind == PHASE:
        return np.exp(1j * evaluate_odd(group.odd_coefficients, kx, ky))
    return evaluate_even(group.even_zernike, kx, ky)


class CorrectionCache:
    """Get-or-compute store of correction images keyed by (group id, size, kind)."""

    def __init__(self):
        self._entries: Dict[Tuple[int, int, str], np.ndarray] = {}

    def get(self, group, size: int, kind: str = PHASE) -> np.ndarray:
        """
        Return the cached correction image, computing it on the first request.

        Concurrent misses on the same key may compute the image more than once;
        the values are identical so whichever copy is stored last is kept.

        Args:
            group: OpticsGroup
            size: Box size s
            kind: "phase" or "gamma_offset"

        Returns:
            Read-only correction image
        """
        key = (group.id, int(size), kind)
        cached = self._entries.get(key)
        if cached is not None:
            return cached

        logger.debug(f"Computing {kind} correction for optics group {group.id}, size {size}")
        image = compute_correction(group, size, kind)
        image.setflags(write=False)
        self._entries[key] = image
        return image

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> KeysView:
        """(group id, size, kind) keys of the computed images."""
        return self._entries.keys()
