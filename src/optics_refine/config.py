"""Configuration of beam tilt and odd aberration estimation."""

import logging
from pathlib import Path
from typing import Union

from pydantic import Field, field_validator, model_validator
from pydantic.dataclasses import dataclass

from optics_refine.constants import POLYNOMIAL_MIN_DEGREE

logger = logging.getLogger(__name__)

__all__ = ['TiltEstimationConfig']


@dataclass
class TiltEstimationConfig:
    """
    Parameters of the accumulate-then-fit pipeline.

    Attributes:
        kmin: Inner frequency threshold in Angstrom; coarser frequencies are not fitted
        odd_aberr_max_n: Maximum degree of the odd Zernike fit, < 3 fits tilt and shift only
        xring0: Start of the exclusion ring in Angstrom
        xring1: End of the exclusion ring in Angstrom, ring disabled when <= 0
        debug: Write weight and residual maps
        diag: Write phase and fit maps and a summary figure per group
        num_workers: Threads used to accumulate one batch
        output_dir: Root directory for checkpoints and diagnostics
        verbosity: Log pipeline milestones when > 0
    """

    kmin: float = Field(default=20.0, gt=0.0)
    odd_aberr_max_n: int = Field(default=0, ge=0)
    xring0: float = Field(default=-1.0)
    xring1: float = Field(default=-1.0)
    debug: bool = Field(default=False)
    diag: bool = Field(default=False)
    num_workers: int = Field(default=1, ge=1)
    output_dir: Union[str, Path] = Field(default=".")
    verbosity: int = Field(default=1, ge=0)

    @field_validator("odd_aberr_max_n")
    @classmethod
    def validate_odd_degree(cls, v: int) -> int:
        """Even degrees add no odd polynomials; fit up to the next lower odd degree."""
        if v >= POLYNOMIAL_MIN_DEGREE and v % 2 == 0:
            logger.warning(f"odd_aberr_max_n={v} is even, odd polynomials only go up to {v - 1}")
        return v

    @model_validator(mode="after")
    def validate_exclusion_ring(self) -> "TiltEstimationConfig":
        """Ensure the exclusion ring is a non-empty band when active."""
        if self.xring1 > 0.0 and self.xring1 <= self.xring0:
            raise ValueError(
                f"Exclusion ring end ({self.xring1} A) must exceed its start ({self.xring0} A)"
            )
        return self

    @property
    def uses_polynomial_model(self) -> bool:
        """True when the odd Zernike model replaces the planar tilt + shift model."""
        return self.odd_aberr_max_n >= POLYNOMIAL_MIN_DEGREE

    @property
    def has_exclusion_ring(self) -> bool:
        return self.xring1 > 0.0
