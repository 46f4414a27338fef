"""Per-particle contrast transfer function on the half spectrum."""

import logging
from typing import Mapping, Optional

import numpy as np
from pydantic import Field
from pydantic.dataclasses import dataclass

from optics_refine.constants import (
    CS_MM_TO_ANGSTROM,
    CTF_BFACTOR,
    CTF_SCALEFACTOR,
    DEFOCUS_ANGLE,
    DEFOCUS_U,
    DEFOCUS_V,
    PHASE_SHIFT,
)
from optics_refine.physics import electron_wavelength, spatial_frequencies

logger = logging.getLogger(__name__)

__all__ = ['Ctf']


@dataclass
class Ctf:
    """
    Standard single-particle CTF with astigmatic defocus.

    Defocus is in Angstrom (positive is underfocus), angles in degrees,
    Cs in mm and the B-factor in A^2.
    """

    defocus_u: float
    defocus_v: float
    defocus_angle: float = 0.0
    voltage: float = Field(default=300.0, gt=0.0)
    spherical_aberration: float = Field(default=2.7, ge=0.0)
    amplitude_contrast: float = Field(default=0.1, ge=0.0, lt=1.0)
    phase_shift: float = 0.0
    bfactor: float = 0.0
    scale: float = 1.0

    @classmethod
    def from_particle(cls, particle: Mapping, group) -> "Ctf":
        """
        Build the CTF of one particle from its table row and optics group.

        Args:
            particle: Particle row (pandas Series or dict) with defocus columns
            group: OpticsGroup the particle belongs to
        """
        return cls(
            defocus_u=float(particle[DEFOCUS_U]),
            defocus_v=float(particle[DEFOCUS_V]),
            defocus_angle=float(particle[DEFOCUS_ANGLE]),
            voltage=group.voltage,
            spherical_aberration=group.spherical_aberration,
            amplitude_contrast=group.amplitude_contrast,
            phase_shift=float(particle.get(PHASE_SHIFT, 0.0)),
            bfactor=float(particle.get(CTF_BFACTOR, 0.0)),
            scale=float(particle.get(CTF_SCALEFACTOR, 1.0)),
        )

    def gamma(
        self,
        size: int,
        pixel_size: float,
        gamma_offset: Optional[np.ndarray] = None,
        mag_matrix: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """Phase argument of the CTF on the half spectrum."""
        wavelength = electron_wavelength(self.voltage)
        cs = self.spherical_aberration * CS_MM_TO_ANGSTROM
        kx, ky = spatial_frequencies(size, pixel_size, mag_matrix)

        k2 = kx * kx + ky * ky
        azimuth = np.arctan2(ky, kx)
        mean_defocus = 0.5 * (self.defocus_u + self.defocus_v)
        deviation = 0.5 * (self.defocus_u - self.defocus_v)
        defocus = mean_defocus + deviation * np.cos(2.0 * (azimuth - np.deg2rad(self.defocus_angle)))

        amplitude_phase = np.arctan(
            self.amplitude_contrast / np.sqrt(1.0 - self.amplitude_contrast**2)
        )
        gamma = (
            np.pi * wavelength * defocus * k2
            - 0.5 * np.pi * cs * wavelength**3 * k2 * k2
            - np.deg2rad(self.phase_shift)
            - amplitude_phase
        )
        if gamma_offset is not None:
            gamma = gamma + gamma_offset
        return gamma

    def image(
        self,
        size: int,
        pixel_size: float,
        gamma_offset: Optional[np.ndarray] = None,
        mag_matrix: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Evaluate the CTF on the half spectrum of an s x s image.

        Args:
            size: Box size s
            pixel_size: Pixel size in Angstrom
            gamma_offset: Optional symmetric aberration phase added to gamma
            mag_matrix: Optional anisotropic magnification

        Returns:
            Real (s, s//2 + 1) array
        """
        gamma = self.gamma(size, pixel_size, gamma_offset, mag_matrix)
        ctf = -self.scale * np.sin(gamma)

        if self.bfactor != 0.0:
            kx, ky = spatial_frequencies(size, pixel_size, mag_matrix)
            ctf *= np.exp(-0.25 * self.bfactor * (kx * kx + ky * ky))

        return ctf
