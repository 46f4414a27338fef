"""Optical physics helpers on the half-spectrum Fourier layout.

Images of size s x s are handled as the non-redundant half of their
2D Fourier transform (numpy ``rfft2`` layout): s rows indexed by the
wrapped y frequency and s//2 + 1 columns indexed by x >= 0.
"""

import logging
from typing import Tuple

import numpy as np

from optics_refine.constants import CS_MM_TO_ANGSTROM, MRAD

logger = logging.getLogger(__name__)

__all__ = [
    'electron_wavelength',
    'half_spectrum_shape',
    'pixel_frequencies',
    'spatial_frequencies',
    'tilt_phase_factor',
    'tilt_shift_basis',
    'tilt_shift_phase',
    'shift_phase_ramp',
]


def electron_wavelength(voltage_kv: float) -> float:
    """
    Relativistic electron wavelength.

    Args:
        voltage_kv: Acceleration voltage in kV

    Returns:
        Wavelength in Angstrom
    """
    if voltage_kv <= 0:
        raise ValueError(f"Voltage must be positive, got {voltage_kv} kV")
    voltage = voltage_kv * 1e3
    return 12.2642598 / np.sqrt(voltage * (1.0 + 0.978466e-6 * voltage))


def half_spectrum_shape(size: int) -> Tuple[int, int]:
    """Shape of the half spectrum of an s x s image."""
    if size <= 0:
        raise ValueError(f"Image size must be positive, got {size}")
    return size, size // 2 + 1


def pixel_frequencies(size: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Integer frequency coordinates of the half spectrum.

    Args:
        size: Box size s

    Returns:
        (x, y) broadcastable grids in pixels, y wrapped to [-s/2, s/2]
    """
    h, w = half_spectrum_shape(size)
    y = np.arange(h, dtype=np.float64)
    y = np.where(y < w, y, y - size)[:, None]
    x = np.arange(w, dtype=np.float64)[None, :]
    return x, y


def spatial_frequencies(
    size: int, pixel_size: float, mag_matrix: np.ndarray = None
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Spatial frequencies of the half spectrum in inverse Angstrom.

    Args:
        size: Box size s
        pixel_size: Pixel size in Angstrom
        mag_matrix: Optional 2x2 anisotropic magnification applied to (kx, ky)

    Returns:
        (kx, ky) full (s, s//2 + 1) grids
    """
    x, y = pixel_frequencies(size)
    box = size * pixel_size
    kx, ky = np.broadcast_arrays(x / box, y / box)

    if mag_matrix is not None:
        m = np.asarray(mag_matrix, dtype=np.float64)
        kx, ky = m[0, 0] * kx + m[0, 1] * ky, m[1, 0] * kx + m[1, 1] * ky
    else:
        kx, ky = kx.copy(), ky.copy()

    return kx, ky


def tilt_phase_factor(cs_mm: float, wavelength: float) -> float:
    """
    Scale C of the beam tilt phase C * |k|^2 * (k . tilt) for tilt in mrad.

    Args:
        cs_mm: Spherical aberration in mm
        wavelength: Electron wavelength in Angstrom
    """
    return 2.0 * np.pi * cs_mm * CS_MM_TO_ANGSTROM * wavelength * wavelength * MRAD


def tilt_shift_basis(
    kx: np.ndarray, ky: np.ndarray, cs_mm: float, wavelength: float
) -> np.ndarray:
    """
    Phase basis of the planar model, ordered (shift_x, shift_y, tilt_x, tilt_y).

    Returns:
        Array of shape (4,) + kx.shape
    """
    c = tilt_phase_factor(cs_mm, wavelength)
    k2 = kx * kx + ky * ky
    return np.stack([
        2.0 * np.pi * kx,
        2.0 * np.pi * ky,
        c * kx * k2,
        c * ky * k2,
    ])


def tilt_shift_phase(
    kx: np.ndarray,
    ky: np.ndarray,
    cs_mm: float,
    wavelength: float,
    shift_x: float = 0.0,
    shift_y: float = 0.0,
    tilt_x: float = 0.0,
    tilt_y: float = 0.0,
) -> np.ndarray:
    """Phase of a shift (Angstrom) and beam tilt (mrad) on the given frequencies."""
    params = np.array([shift_x, shift_y, tilt_x, tilt_y], dtype=np.float64)
    return np.tensordot(params, tilt_shift_basis(kx, ky, cs_mm, wavelength), axes=1)


def shift_phase_ramp(size: int, pixel_size: float, dx: float, dy: float) -> np.ndarray:
    """
    Fourier multiplier translating an image by (dx, dy) Angstrom.

    Returns:
        Complex (s, s//2 + 1) array exp(-2 pi i k . d)
    """
    kx, ky = spatial_frequencies(size, pixel_size)
    return np.exp(-2j * np.pi * (kx * dx + ky * dy))
