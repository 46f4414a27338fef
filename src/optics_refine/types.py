"""Shared result types for aberration estimation."""

from typing import List, NamedTuple, Optional

import numpy as np


class AccumulatorPair(NamedTuple):
    """Weighted phase-difference sum and confidence-weight sum for one group."""

    xy: np.ndarray  # complex, (s, s//2 + 1)
    w: np.ndarray  # real, (s, s//2 + 1)

    def __add__(self, other: "AccumulatorPair") -> "AccumulatorPair":
        return AccumulatorPair(self.xy + other.xy, self.w + other.w)

    @classmethod
    def zeros(cls, size: int) -> "AccumulatorPair":
        """Zero-initialized pair on the half-spectrum layout of an s x s image."""
        shape = (size, size // 2 + 1)
        return cls(np.zeros(shape, dtype=np.complex128), np.zeros(shape, dtype=np.float64))


class FitResult(NamedTuple):
    """Fitted antisymmetric aberration of one optics group."""

    group: int
    shift_x: float  # Angstrom
    shift_y: float
    tilt_x: float  # mrad
    tilt_y: float
    odd_zernike: Optional[List[float]]  # Polynomial fits only, beam tilt removed
    fit: np.ndarray  # Fitted phase on the half spectrum
