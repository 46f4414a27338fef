"""Optics group registry: per-group physical parameters and the observation model.

The registry is built once per run from the optics table and is passed to
every component that needs optical parameters. Its groups and correction
cache are frozen for the run; fitted values are written into a copy of
the table (see ``with_fit_results``).
"""

import dataclasses
import logging
from typing import Annotated, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pydantic import Field
from pydantic.dataclasses import dataclass

from optics_refine.constants import (
    AMPLITUDE_CONTRAST,
    BEAM_TILT_X,
    BEAM_TILT_Y,
    DEFAULT_AMPLITUDE_CONTRAST,
    EVEN_ZERNIKE,
    GAMMA_OFFSET,
    MAG_MATRIX_COLUMNS,
    ODD_ZERNIKE,
    OPTICS_GROUP,
    ORIGIN_X_ANGST,
    ORIGIN_Y_ANGST,
    PHASE,
    PIXEL_SIZE,
    REQUIRED_OPTICS_COLUMNS,
    REQUIRED_PARTICLE_COLUMNS,
    SPHERICAL_ABERRATION,
    VOLTAGE,
)
from optics_refine.correction_cache import CorrectionCache
from optics_refine.ctf import Ctf
from optics_refine.physics import electron_wavelength, half_spectrum_shape, shift_phase_ramp
from optics_refine.types import FitResult
from optics_refine.zernike import insert_tilt

logger = logging.getLogger(__name__)

__all__ = ['OpticsGroup', 'OpticsGroupRegistry', 'OpticsGroupError']

IDENTITY_MAG = ((1.0, 0.0), (0.0, 1.0))


class OpticsGroupError(ValueError):
    """Optics group configuration error (undefined, unordered or malformed groups)."""


def _parse_coefficients(value) -> Tuple[float, ...]:
    """Read a coefficient vector from a table cell ("[a, b, ...]", list, array or NaN)."""
    if value is None:
        return ()
    if isinstance(value, str):
        text = value.strip().strip("[]").strip()
        if not text:
            return ()
        return tuple(float(v) for v in text.replace(",", " ").split())
    if np.isscalar(value):
        if pd.isna(value):
            return ()
        return (float(value),)
    return tuple(float(v) for v in value)


@dataclass(frozen=True)
class OpticsGroup:
    """Acquisition parameters shared by all particles of one optics group."""

    id: Annotated[int, Field(ge=1)]
    pixel_size: Annotated[float, Field(gt=0.0)]  # Angstrom
    voltage: Annotated[float, Field(gt=0.0)]  # kV
    spherical_aberration: Annotated[float, Field(ge=0.0)]  # mm
    amplitude_contrast: float = Field(default=DEFAULT_AMPLITUDE_CONTRAST, ge=0.0, lt=1.0)
    odd_zernike: Tuple[float, ...] = ()
    even_zernike: Tuple[float, ...] = ()
    beam_tilt_x: float = 0.0  # mrad
    beam_tilt_y: float = 0.0
    mag: Tuple[Tuple[float, float], Tuple[float, float]] = IDENTITY_MAG

    @property
    def wavelength(self) -> float:
        """Electron wavelength in Angstrom."""
        return electron_wavelength(self.voltage)

    @property
    def has_mag_matrix(self) -> bool:
        return tuple(map(tuple, self.mag)) != IDENTITY_MAG

    @property
    def mag_matrix(self) -> np.ndarray:
        return np.array(self.mag, dtype=np.float64)

    @property
    def odd_coefficients(self) -> Tuple[float, ...]:
        """Odd Zernike coefficients with the tabulated beam tilt folded in."""
        if self.beam_tilt_x == 0.0 and self.beam_tilt_y == 0.0:
            return self.odd_zernike
        return tuple(insert_tilt(
            self.odd_zernike, self.beam_tilt_x, self.beam_tilt_y,
            self.spherical_aberration, self.wavelength,
        ))

    @classmethod
    def from_row(cls, row: Mapping) -> "OpticsGroup":
        """Build a group from one optics table row."""
        mag = IDENTITY_MAG
        if all(col in row and not pd.isna(row[col]) for pair in MAG_MATRIX_COLUMNS for col in pair):
            mag = tuple(tuple(float(row[col]) for col in pair) for pair in MAG_MATRIX_COLUMNS)

        def scalar(column, default):
            value = row.get(column, default)
            return default if pd.isna(value) else float(value)

        return cls(
            id=int(row[OPTICS_GROUP]),
            pixel_size=float(row[PIXEL_SIZE]),
            voltage=float(row[VOLTAGE]),
            spherical_aberration=float(row[SPHERICAL_ABERRATION]),
            amplitude_contrast=scalar(AMPLITUDE_CONTRAST, DEFAULT_AMPLITUDE_CONTRAST),
            odd_zernike=_parse_coefficients(row.get(ODD_ZERNIKE)),
            even_zernike=_parse_coefficients(row.get(EVEN_ZERNIKE)),
            beam_tilt_x=scalar(BEAM_TILT_X, 0.0),
            beam_tilt_y=scalar(BEAM_TILT_Y, 0.0),
            mag=mag,
        )


class OpticsGroupRegistry:
    """
    Per-run optics model: group parameters, unit conversion,
    prediction and correction of observed images.
    """

    def __init__(self, groups: Sequence[OpticsGroup], table: Optional[pd.DataFrame] = None):
        """
        Args:
            groups: Optics groups in storage order
            table: Optics table the groups were read from (kept for writing results)
        """
        if len(groups) == 0:
            raise OpticsGroupError("Optics table defines no groups")

        ids = [g.id for g in groups]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise OpticsGroupError(f"Optics groups defined more than once: {duplicates}")

        self.groups: List[OpticsGroup] = list(groups)
        self._by_id: Dict[int, OpticsGroup] = {g.id: g for g in self.groups}
        self._table = table.reset_index(drop=True).copy() if table is not None else None
        self.cache = CorrectionCache()

    @classmethod
    def from_table(cls, optics: pd.DataFrame) -> "OpticsGroupRegistry":
        """
        Build the registry from an optics table.

        Raises:
            OpticsGroupError: If required columns are missing
        """
        missing = [c for c in REQUIRED_OPTICS_COLUMNS if c not in optics.columns]
        if missing:
            raise OpticsGroupError(f"Optics table is missing columns: {missing}")

        groups = [OpticsGroup.from_row(row) for _, row in optics.iterrows()]
        logger.debug(f"Read {len(groups)} optics groups")
        return cls(groups, optics)

    @classmethod
    def load_safely(
        cls, particles: pd.DataFrame, optics: pd.DataFrame
    ) -> Tuple["OpticsGroupRegistry", pd.DataFrame]:
        """
        Build a registry and validate the particles against it.

        Unordered groups are renumbered to match their row order.

        Returns:
            (registry, particles), particles relabelled if renumbering was needed

        Raises:
            OpticsGroupError: On missing columns or undefined groups
        """
        if not cls.contains_all_needed_columns(particles):
            missing = [c for c in REQUIRED_PARTICLE_COLUMNS if c not in particles.columns]
            raise OpticsGroupError(f"Particle table is missing columns: {missing}")

        registry = cls.from_table(optics)
        registry.validate_particles(particles)

        if not registry.groups_are_ordered():
            logger.warning("Optics groups are not numbered 1..N in table order, renumbering")
            registry, particles = registry.normalize_ordering(particles)

        return registry, particles

    @staticmethod
    def contains_all_needed_columns(particles: pd.DataFrame) -> bool:
        return all(c in particles.columns for c in REQUIRED_PARTICLE_COLUMNS)

    # Group bookkeeping

    @property
    def number_of_groups(self) -> int:
        return len(self.groups)

    @property
    def group_ids(self) -> List[int]:
        return [g.id for g in self.groups]

    def group(self, group_id: int) -> OpticsGroup:
        """Look up a group by id."""
        try:
            return self._by_id[int(group_id)]
        except KeyError:
            raise OpticsGroupError(f"Optics group {group_id} is not defined") from None

    def groups_are_ordered(self) -> bool:
        """True if group ids are 1..N in storage order."""
        return self.group_ids == list(range(1, self.number_of_groups + 1))

    def find_undefined_groups(self, particles: pd.DataFrame) -> List[int]:
        """Group ids referenced by particles but not defined in the optics table."""
        referenced = pd.unique(particles[OPTICS_GROUP].astype(int))
        return sorted(int(g) for g in referenced if int(g) not in self._by_id)

    def validate_particles(self, particles: pd.DataFrame, context: str = "") -> None:
        """
        Raises:
            OpticsGroupError: If any particle references an undefined group
        """
        undefined = self.find_undefined_groups(particles)
        if undefined:
            where = f" in {context}" if context else ""
            raise OpticsGroupError(
                f"Particles{where} reference undefined optics groups {undefined}; "
                f"defined groups are {self.group_ids}"
            )

    def groups_present(self, particles: pd.DataFrame) -> List[int]:
        """Sorted ids of the groups referenced by particles."""
        return sorted(int(g) for g in pd.unique(particles[OPTICS_GROUP].astype(int)))

    def normalize_ordering(
        self, particles: pd.DataFrame
    ) -> Tuple["OpticsGroupRegistry", pd.DataFrame]:
        """
        Renumber groups 1..N in storage order and relabel the particles.

        The full old -> new map is built before any particle is touched and is
        applied to a copy in a single assignment, so no intermediate state can
        alias two groups. Inputs are left unchanged.

        Returns:
            (renumbered registry, relabelled particle copy)
        """
        self.validate_particles(particles)
        mapping = {g.id: new_id for new_id, g in enumerate(self.groups, start=1)}

        relabelled = particles.copy()
        relabelled[OPTICS_GROUP] = particles[OPTICS_GROUP].astype(int).map(mapping)

        groups = [dataclasses.replace(g, id=mapping[g.id]) for g in self.groups]
        table = None
        if self._table is not None:
            table = self._table.copy()
            table[OPTICS_GROUP] = table[OPTICS_GROUP].astype(int).map(mapping)

        logger.info(f"Renumbered optics groups: {mapping}")
        return OpticsGroupRegistry(groups, table), relabelled

    # Units

    def pixel_size(self, group_id: int) -> float:
        return self.group(group_id).pixel_size

    def all_pixel_sizes_identical(self) -> bool:
        return len({g.pixel_size for g in self.groups}) == 1

    def ang_to_pix(self, a: float, size: int, group_id: int) -> float:
        """Convert a resolution in Angstrom to a Fourier radius in pixels."""
        return size * self.pixel_size(group_id) / a

    def pix_to_ang(self, p: float, size: int, group_id: int) -> float:
        """Convert a Fourier radius in pixels to a resolution in Angstrom."""
        return size * self.pixel_size(group_id) / p

    def apply_aniso_mag_transp(self, a3d_transp: np.ndarray, group_id: int) -> np.ndarray:
        """Apply the group's anisotropic magnification to a transposed 3x3 projection matrix."""
        a = np.asarray(a3d_transp, dtype=np.float64)
        if a.shape != (3, 3):
            raise ValueError(f"Expected a 3x3 matrix, got shape {a.shape}")

        group = self.group(group_id)
        if not group.has_mag_matrix:
            return a.copy()

        mag3d = np.eye(3)
        mag3d[:2, :2] = group.mag_matrix
        return mag3d.T @ a

    # Observation model

    def phase_correction(self, group_id: int, size: int) -> np.ndarray:
        """Cached effect of the antisymmetric aberration, exp(i * phi_odd)."""
        return self.cache.get(self.group(group_id), size, PHASE)

    def gamma_offset(self, group_id: int, size: int) -> np.ndarray:
        """Cached effect of the symmetric aberration on the CTF phase."""
        return self.cache.get(self.group(group_id), size, GAMMA_OFFSET)

    def ctf(self, particle: Mapping) -> Ctf:
        return Ctf.from_particle(particle, self.group(particle[OPTICS_GROUP]))

    def ctf_image(self, particle: Mapping, size: int) -> np.ndarray:
        """CTF of a particle including the group's symmetric aberration."""
        group = self.group(particle[OPTICS_GROUP])
        return self.ctf(particle).image(
            size,
            group.pixel_size,
            gamma_offset=self.gamma_offset(group.id, size),
            mag_matrix=group.mag_matrix if group.has_mag_matrix else None,
        )

    def predict(
        self,
        particle: Mapping,
        reference: np.ndarray,
        apply_ctf: bool = True,
        shift_phases: bool = True,
        apply_shift: bool = True,
    ) -> np.ndarray:
        """
        Predict the observation of a particle from its idealized projection.

        Args:
            particle: Particle row with optics group, CTF and origin columns
            reference: Half-spectrum projection (s, s//2 + 1) from the reconstruction
            apply_ctf: Multiply by the particle CTF
            shift_phases: Apply the antisymmetric aberration of the group
            apply_shift: Translate by minus the particle origin

        Returns:
            New complex half-spectrum array
        """
        size = _half_spectrum_size(reference)
        group = self.group(particle[OPTICS_GROUP])
        predicted = np.array(reference, dtype=np.complex128, copy=True)

        if apply_shift:
            dx = float(particle.get(ORIGIN_X_ANGST, 0.0))
            dy = float(particle.get(ORIGIN_Y_ANGST, 0.0))
            if dx != 0.0 or dy != 0.0:
                predicted *= shift_phase_ramp(size, group.pixel_size, -dx, -dy)

        if apply_ctf:
            predicted *= self.ctf_image(particle, size)

        if shift_phases:
            predicted *= self.phase_correction(group.id, size)

        return predicted

    def demodulate(self, group_id: int, observed: np.ndarray) -> None:
        """
        Remove the antisymmetric aberration of a group from an observation, in place.

        Raises:
            ValueError: If the observation is not a complex half spectrum
        """
        size = _half_spectrum_size(observed)
        if not np.iscomplexobj(observed):
            raise ValueError(f"Expected a complex half spectrum, got dtype {observed.dtype}")
        observed *= np.conj(self.phase_correction(group_id, size))

    def demodulate_particle(self, particle: Mapping, observed: np.ndarray) -> None:
        self.demodulate(int(particle[OPTICS_GROUP]), observed)

    # Persistence

    def to_table(self) -> pd.DataFrame:
        """Copy of the optics table, rebuilt from the groups if none was given."""
        if self._table is not None:
            return self._table.copy()

        return pd.DataFrame({
            OPTICS_GROUP: [g.id for g in self.groups],
            PIXEL_SIZE: [g.pixel_size for g in self.groups],
            VOLTAGE: [g.voltage for g in self.groups],
            SPHERICAL_ABERRATION: [g.spherical_aberration for g in self.groups],
            AMPLITUDE_CONTRAST: [g.amplitude_contrast for g in self.groups],
        })

    def with_fit_results(self, results: Iterable[FitResult]) -> pd.DataFrame:
        """
        Optics table copy with fitted beam tilt and odd coefficients written in.

        Groups without a result keep their original values.
        """
        table = self.to_table()
        for column in (BEAM_TILT_X, BEAM_TILT_Y):
            if column not in table.columns:
                table[column] = 0.0

        row_of = {int(g): i for i, g in enumerate(table[OPTICS_GROUP])}
        for result in results:
            row = table.index[row_of[result.group]]
            table.loc[row, BEAM_TILT_X] = result.tilt_x
            table.loc[row, BEAM_TILT_Y] = result.tilt_y

            if result.odd_zernike is not None:
                if ODD_ZERNIKE not in table.columns:
                    table[ODD_ZERNIKE] = pd.Series([None] * len(table), index=table.index, dtype=object)
                else:
                    table[ODD_ZERNIKE] = table[ODD_ZERNIKE].astype(object)
                table.at[row, ODD_ZERNIKE] = list(result.odd_zernike)

        return table


def _half_spectrum_size(image: np.ndarray) -> int:
    """Box size of a half-spectrum image, validating its shape."""
    if image.ndim != 2:
        raise ValueError(f"Expected 2D array, got {image.ndim}D array with shape {image.shape}")
    size = image.shape[0]
    if image.shape != half_spectrum_shape(size):
        raise ValueError(
            f"Expected half spectrum of shape {half_spectrum_shape(size)}, got {image.shape}"
        )
    return size
