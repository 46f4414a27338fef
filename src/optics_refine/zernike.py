"""Zernike polynomials over the unit disk in inverse Angstrom.

Polynomials are unnormalized: Z_n^m = R_n^m(rho) cos(m theta) for m >= 0
and R_n^|m|(rho) sin(|m| theta) for m < 0. Odd and even polynomials are
addressed through separate single indices so that coefficient vectors
for antisymmetric and symmetric aberrations can be stored independently.
"""

import logging
from math import factorial
from typing import Dict, List, Sequence, Tuple

import numpy as np

from optics_refine.physics import tilt_phase_factor

logger = logging.getLogger(__name__)

__all__ = [
    'odd_index_to_mn',
    'even_index_to_mn',
    'odd_coefficient_count',
    'even_coefficient_count',
    'radial_coefficients',
    'zernike',
    'odd_basis',
    'even_basis',
    'evaluate_odd',
    'evaluate_even',
    'insert_tilt',
    'remove_tilt',
    'extract_tilt_shift',
]


def odd_index_to_mn(i: int) -> Tuple[int, int]:
    """Map an odd-polynomial index to (m, n): 0 -> (-1, 1), 1 -> (1, 1), 2 -> (-3, 3), ..."""
    if i < 0:
        raise ValueError(f"Zernike index must be non-negative, got {i}")
    j = int((np.sqrt(4 * i + 1) - 1) // 2)
    # Guard against floating point truncation at the block boundaries
    while (j + 1) * (j + 2) <= i:
        j += 1
    while j * (j + 1) > i:
        j -= 1
    n = 2 * j + 1
    m = 2 * (i - j * (j + 1)) - n
    return m, n


def even_index_to_mn(i: int) -> Tuple[int, int]:
    """Map an even-polynomial index to (m, n): 0 -> (0, 0), 1 -> (-2, 2), 2 -> (0, 2), ..."""
    if i < 0:
        raise ValueError(f"Zernike index must be non-negative, got {i}")
    j = int(np.sqrt(i))
    while (j + 1) * (j + 1) <= i:
        j += 1
    while j * j > i:
        j -= 1
    n = 2 * j
    m = 2 * (i - j * j) - n
    return m, n


def odd_coefficient_count(n_max: int) -> int:
    """Number of odd polynomials with degree <= n_max."""
    if n_max < 1:
        return 0
    j = (n_max - 1) // 2
    return (j + 1) * (j + 2)


def even_coefficient_count(n_max: int) -> int:
    """Number of even polynomials with degree <= n_max."""
    if n_max < 0:
        return 0
    j = n_max // 2
    return (j + 1) * (j + 1)


def radial_coefficients(m: int, n: int) -> Dict[int, float]:
    """
    Coefficients of the radial polynomial R_n^|m| as {power of rho: coefficient}.
    """
    m = abs(m)
    if (n - m) % 2 != 0 or m > n:
        raise ValueError(f"Invalid Zernike order (m={m}, n={n})")

    coeffs = {}
    for k in range((n - m) // 2 + 1):
        coeffs[n - 2 * k] = (
            (-1) ** k * factorial(n - k)
            / (factorial(k) * factorial((n + m) // 2 - k) * factorial((n - m) // 2 - k))
        )
    return coeffs


def zernike(m: int, n: int, kx: np.ndarray, ky: np.ndarray) -> np.ndarray:
    """Evaluate Z_n^m at Cartesian coordinates."""
    rho = np.sqrt(kx * kx + ky * ky)
    theta = np.arctan2(ky, kx)

    radial = np.zeros_like(rho)
    for power, c in radial_coefficients(m, n).items():
        radial += c * rho**power

    if m >= 0:
        return radial * np.cos(m * theta)
    return radial * np.sin(-m * theta)


def odd_basis(kx: np.ndarray, ky: np.ndarray, count: int) -> np.ndarray:
    """Stack of the first `count` odd polynomials, shape (count,) + kx.shape."""
    return np.stack([zernike(*odd_index_to_mn(i), kx, ky) for i in range(count)])


def even_basis(kx: np.ndarray, ky: np.ndarray, count: int) -> np.ndarray:
    """Stack of the first `count` even polynomials, shape (count,) + kx.shape."""
    return np.stack([zernike(*even_index_to_mn(i), kx, ky) for i in range(count)])


def evaluate_odd(coeffs: Sequence[float], kx: np.ndarray, ky: np.ndarray) -> np.ndarray:
    """Antisymmetric aberration phase sum_i coeffs[i] * Z_odd_i."""
    out = np.zeros(np.broadcast(kx, ky).shape)
    for i, c in enumerate(coeffs):
        if c != 0.0:
            out += c * zernike(*odd_index_to_mn(i), kx, ky)
    return out


def evaluate_even(coeffs: Sequence[float], kx: np.ndarray, ky: np.ndarray) -> np.ndarray:
    """Symmetric aberration phase sum_i coeffs[i] * Z_even_i."""
    out = np.zeros(np.broadcast(kx, ky).shape)
    for i, c in enumerate(coeffs):
        if c != 0.0:
            out += c * zernike(*even_index_to_mn(i), kx, ky)
    return out


def insert_tilt(
    coeffs: Sequence[float], tilt_x: float, tilt_y: float, cs_mm: float, wavelength: float
) -> List[float]:
    """
    Add a beam tilt (mrad) to an odd coefficient vector.

    Uses x |k|^2 = (Z_3^1 + 2 Z_1^1) / 3 and the analogous identity for y.

    Returns:
        New coefficient vector with at least 6 entries
    """
    out = list(coeffs) + [0.0] * max(0, 6 - len(coeffs))
    c = tilt_phase_factor(cs_mm, wavelength)

    out[0] += 2.0 * c * tilt_y / 3.0
    out[1] += 2.0 * c * tilt_x / 3.0
    out[3] += c * tilt_y / 3.0
    out[4] += c * tilt_x / 3.0
    return out


def remove_tilt(
    coeffs: Sequence[float], tilt_x: float, tilt_y: float, cs_mm: float, wavelength: float
) -> List[float]:
    """
    Subtract a beam tilt (mrad) from an odd coefficient vector.

    Exact inverse of `insert_tilt`: removing the tilt reported by
    `extract_tilt_shift` leaves a vector whose extracted tilt is zero.
    """
    return insert_tilt(coeffs, -tilt_x, -tilt_y, cs_mm, wavelength)


def extract_tilt_shift(
    coeffs: Sequence[float], cs_mm: float, wavelength: float
) -> Tuple[float, float, float, float]:
    """
    Project an odd coefficient vector onto the planar tilt + shift model.

    The linear (x, y) and cubic (x |k|^2, y |k|^2) monomials of every
    |m| = 1 polynomial are collected; higher monomials are ignored.

    Returns:
        (shift_x, shift_y, tilt_x, tilt_y) in Angstrom and mrad
    """
    c = tilt_phase_factor(cs_mm, wavelength)
    linear = np.zeros(2)  # (x, y)
    cubic = np.zeros(2)

    for i, value in enumerate(coeffs):
        m, n = odd_index_to_mn(i)
        if abs(m) != 1:
            continue
        axis = 0 if m > 0 else 1
        radial = radial_coefficients(m, n)
        linear[axis] += value * radial.get(1, 0.0)
        cubic[axis] += value * radial.get(3, 0.0)

    shift_x, shift_y = linear / (2.0 * np.pi)
    tilt_x, tilt_y = cubic / c
    return float(shift_x), float(shift_y), float(tilt_x), float(tilt_y)
