"""Parametric fits of antisymmetric phase fields.

Both the planar (shift + beam tilt) and the odd Zernike model are linear
in their parameters: phi(k) = sum_j p_j * B_j(k). Each is fitted in two
stages: a weighted least-squares estimate against the wrapped phase,
followed by a nonlinear refinement against the complex field
sum w * |z - exp(i phi)|^2, which is insensitive to phase wrapping.
"""

import logging
from typing import List, Sequence, Tuple

import numpy as np
from scipy.optimize import least_squares

from optics_refine.constants import SINGULAR_VALUE_RTOL
from optics_refine.physics import spatial_frequencies, tilt_shift_basis
from optics_refine.zernike import odd_basis, odd_coefficient_count

logger = logging.getLogger(__name__)

__all__ = [
    'DegenerateFitError',
    'linear_phase_fit',
    'refine_phase_fit',
    'fit_tilt_shift',
    'optimize_tilt_shift',
    'fit_odd_zernike',
    'optimize_odd_zernike',
]


class DegenerateFitError(np.linalg.LinAlgError):
    """The weighted fit has no unique solution (no weight or a rank-deficient basis)."""


def _masked_system(basis: np.ndarray, weight: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Basis columns and weights restricted to pixels with positive weight."""
    if basis.shape[1:] != weight.shape:
        raise ValueError(f"Basis shape {basis.shape[1:]} does not match weight shape {weight.shape}")

    mask = weight > 0.0
    if not np.any(mask):
        raise DegenerateFitError("All weights are zero")

    return basis[:, mask].T, weight[mask]


def linear_phase_fit(phase: np.ndarray, weight: np.ndarray, basis: np.ndarray) -> np.ndarray:
    """
    Weighted least-squares fit of a phase field on a linear basis.

    Args:
        phase: Wrapped phase (H, W)
        weight: Non-negative weights (H, W); zero excludes a pixel
        basis: Basis functions (n, H, W)

    Returns:
        Parameter vector (n,)

    Raises:
        DegenerateFitError: If the weighted system is rank deficient
    """
    a, w = _masked_system(basis, weight)
    sw = np.sqrt(w)
    design = a * sw[:, None]
    target = phase[weight > 0.0] * sw

    params, _, rank, sv = np.linalg.lstsq(design, target, rcond=SINGULAR_VALUE_RTOL)
    if rank < basis.shape[0]:
        raise DegenerateFitError(
            f"Weighted system has rank {rank} for {basis.shape[0]} parameters"
        )

    logger.debug(f"Linear phase fit: condition number {sv[0] / sv[-1]:.3g}")
    return params


def refine_phase_fit(
    field: np.ndarray, weight: np.ndarray, basis: np.ndarray, initial: Sequence[float]
) -> np.ndarray:
    """
    Refine phase parameters against a complex unit field.

    Minimizes sum w * |field - exp(i * basis . params)|^2 starting from `initial`.

    Args:
        field: Normalized complex field (H, W), ideally of unit modulus
        weight: Non-negative weights (H, W)
        basis: Basis functions (n, H, W)
        initial: Starting parameters (n,)

    Returns:
        Refined parameter vector (n,)
    """
    a, w = _masked_system(basis, weight)
    z = field[weight > 0.0]
    sw = np.sqrt(w)

    def residuals(p):
        d = sw * (z - np.exp(1j * (a @ p)))
        return np.concatenate([d.real, d.imag])

    def jacobian(p):
        # d/dp of -sw * exp(i a.p) = -i * sw * exp(i a.p) * a
        e = (-1j * sw * np.exp(1j * (a @ p)))[:, None] * a
        return np.vstack([e.real, e.imag])

    result = least_squares(
        residuals, np.asarray(initial, dtype=np.float64), jac=jacobian,
        method="lm" if len(z) * 2 >= len(initial) else "trf",
        xtol=1e-12, ftol=1e-12, gtol=1e-12,
    )

    if not result.success:
        logger.warning(f"Phase refinement did not converge: {result.message}")
    logger.debug(f"Phase refinement: cost {result.cost:.6g} after {result.nfev} evaluations")
    return result.x


def _fit_map(basis: np.ndarray, params: np.ndarray) -> np.ndarray:
    return np.tensordot(params, basis, axes=1)


def fit_tilt_shift(
    phase: np.ndarray,
    weight: np.ndarray,
    cs_mm: float,
    wavelength: float,
    pixel_size: float,
) -> Tuple[Tuple[float, float, float, float], np.ndarray]:
    """
    Closed-form estimate of shift (Angstrom) and beam tilt (mrad).

    Args:
        phase: Wrapped phase on the half spectrum (s, s//2 + 1)
        weight: Fit weights on the half spectrum
        cs_mm: Spherical aberration in mm
        wavelength: Electron wavelength in Angstrom
        pixel_size: Pixel size in Angstrom

    Returns:
        ((shift_x, shift_y, tilt_x, tilt_y), fitted phase map)
    """
    kx, ky = spatial_frequencies(phase.shape[0], pixel_size)
    basis = tilt_shift_basis(kx, ky, cs_mm, wavelength)
    params = linear_phase_fit(phase, weight, basis)
    return tuple(float(v) for v in params), _fit_map(basis, params)


def optimize_tilt_shift(
    field: np.ndarray,
    weight: np.ndarray,
    cs_mm: float,
    wavelength: float,
    pixel_size: float,
    initial: Sequence[float],
) -> Tuple[Tuple[float, float, float, float], np.ndarray]:
    """
    Jointly refine shift and beam tilt against the normalized complex field.

    Returns:
        ((shift_x, shift_y, tilt_x, tilt_y), fitted phase map)
    """
    kx, ky = spatial_frequencies(field.shape[0], pixel_size)
    basis = tilt_shift_basis(kx, ky, cs_mm, wavelength)
    params = refine_phase_fit(field, weight, basis, initial)
    return tuple(float(v) for v in params), _fit_map(basis, params)


def fit_odd_zernike(
    phase: np.ndarray, weight: np.ndarray, pixel_size: float, n_max: int
) -> Tuple[List[float], np.ndarray]:
    """
    Closed-form estimate of odd Zernike coefficients up to degree n_max.

    Returns:
        (coefficients, fitted phase map)
    """
    kx, ky = spatial_frequencies(phase.shape[0], pixel_size)
    basis = odd_basis(kx, ky, odd_coefficient_count(n_max))
    params = linear_phase_fit(phase, weight, basis)
    return [float(v) for v in params], _fit_map(basis, params)


def optimize_odd_zernike(
    field: np.ndarray,
    weight: np.ndarray,
    pixel_size: float,
    n_max: int,
    initial: Sequence[float],
) -> Tuple[List[float], np.ndarray]:
    """
    Jointly refine odd Zernike coefficients against the normalized complex field.

    Returns:
        (coefficients, fitted phase map)
    """
    kx, ky = spatial_frequencies(field.shape[0], pixel_size)
    basis = odd_basis(kx, ky, odd_coefficient_count(n_max))
    params = refine_phase_fit(field, weight, basis, initial)
    return [float(v) for v in params], _fit_map(basis, params)
