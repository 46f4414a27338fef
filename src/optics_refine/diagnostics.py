"""Diagnostic raster artifacts of the per-group aberration fit."""

import logging
from pathlib import Path
from typing import Optional, Union

import matplotlib.pyplot as plt
import mrcfile
import numpy as np
from PIL import Image

from optics_refine.constants import POLYNOMIAL_MIN_DEGREE

logger = logging.getLogger(__name__)

__all__ = ['DiagnosticsWriter', 'half_to_full']


def half_to_full(half: np.ndarray, antisymmetric: bool = False) -> np.ndarray:
    """
    Expand a half spectrum to a centered full s x s image.

    Args:
        half: Half-spectrum image (s, s//2 + 1)
        antisymmetric: Negate values at -k (phase maps); otherwise mirror them (weights)

    Returns:
        Real (s, s) image with the zero frequency at (s//2, s//2)
    """
    s = half.shape[0]
    sh = half.shape[1]
    if sh != s // 2 + 1:
        raise ValueError(f"Expected half spectrum of shape ({s}, {s // 2 + 1}), got {half.shape}")

    ky, kx = np.meshgrid(np.arange(s) - s // 2, np.arange(s) - s // 2, indexing="ij")
    direct = kx >= 0
    sign = -1.0 if antisymmetric else 1.0

    rows = np.where(direct, ky, -ky) % s
    cols = np.where(direct, kx, -kx)

    values = half[rows, cols]
    return np.where(direct, values, sign * values)


class DiagnosticsWriter:
    """
    Writes weight, phase, fit and residual maps of each fitted group.

    With `diag`, the phase and fit maps and a summary figure are written;
    with `debug`, the weight and residual maps as well.
    """

    def __init__(self, output_dir: Union[str, Path], debug: bool = False, diag: bool = True):
        self.output_dir = Path(output_dir)
        self.debug = debug
        self.diag = diag

    def write_map(self, name: str, image: np.ndarray) -> Path:
        """Write an image as MRC plus an 8-bit PNG preview; returns the MRC path."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"{name}.mrc"

        with mrcfile.new(str(path), overwrite=True) as mrc:
            mrc.set_data(np.ascontiguousarray(image, dtype=np.float32))

        lo, hi = float(np.min(image)), float(np.max(image))
        scaled = (image - lo) / (hi - lo) if hi > lo else np.zeros_like(image)
        Image.fromarray((scaled * 255).astype(np.uint8)).save(path.with_suffix(".png"))

        logger.debug(f"Wrote diagnostic map {path}")
        return path

    def write_group(
        self,
        group: int,
        weight: np.ndarray,
        phase: np.ndarray,
        linear_fit: np.ndarray,
        fit: np.ndarray,
        n_max: int = 0,
    ) -> None:
        """Write the artifacts of one group's fit."""
        suffix = f"_optics-group_{group}"
        if n_max >= POLYNOMIAL_MIN_DEGREE:
            suffix += f"_N-{n_max}"

        weight_full = half_to_full(weight)
        phase_full = half_to_full(phase, antisymmetric=True)
        lin_full = half_to_full(linear_fit, antisymmetric=True)
        fit_full = half_to_full(fit, antisymmetric=True)
        # Wrapped difference between the measured and fitted phase
        residual_full = np.angle(np.exp(1j * (phase_full - fit_full)))

        if self.debug:
            self.write_map(f"beamtilt_weight-full{suffix}", weight_full)
            self.write_map(f"beamtilt_delta-phase_residual{suffix}", residual_full)

        if self.diag:
            self.write_map(f"beamtilt_delta-phase_per-pixel{suffix}", phase_full)
            self.write_map(f"beamtilt_delta-phase_lin-fit{suffix}", lin_full)
            self.write_map(f"beamtilt_delta-phase_iter-fit{suffix}", fit_full)
            self.plot_group(group, weight_full, phase_full, fit_full, residual_full,
                            self.output_dir / f"beamtilt_summary{suffix}.png")

    def plot_group(
        self,
        group: int,
        weight: np.ndarray,
        phase: np.ndarray,
        fit: np.ndarray,
        residual: np.ndarray,
        output_path: Optional[Path] = None,
    ) -> None:
        """Summary figure with weight, measured phase, fitted phase and residual."""
        fig, axes = plt.subplots(2, 2, figsize=(10, 10))
        fig.suptitle(f"Optics group {group}: antisymmetric phase fit", fontsize=14, fontweight="bold")

        panels = (
            (axes[0, 0], weight, "Fit weight", "viridis", None),
            (axes[0, 1], phase, "Measured phase (rad)", "twilight", (-np.pi, np.pi)),
            (axes[1, 0], np.angle(np.exp(1j * fit)), "Fitted phase (rad)", "twilight", (-np.pi, np.pi)),
            (axes[1, 1], residual, "Residual (rad)", "coolwarm", (-np.pi, np.pi)),
        )
        for ax, image, title, cmap, limits in panels:
            vmin, vmax = limits if limits is not None else (None, None)
            im = ax.imshow(image, cmap=cmap, vmin=vmin, vmax=vmax, origin="lower")
            ax.set_title(title, fontweight="bold")
            ax.set_xticks([])
            ax.set_yticks([])
            fig.colorbar(im, ax=ax, fraction=0.046, pad=0.04)

        if output_path is not None:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            fig.savefig(output_path, dpi=100, bbox_inches="tight")
            logger.info(f"Saved diagnostics plot to {output_path}")

        plt.close(fig)
