#!/usr/bin/env python3
"""Estimate a known beam tilt from simulated particle images.

Usage:
    python simulate_beam_tilt.py --tilt 1.5 -0.8
    python simulate_beam_tilt.py --tilt 1.5 -0.8 --max-n 3 --diag --output outputs/
    python simulate_beam_tilt.py --noise 0.5 --workers 4
"""

import argparse
import logging
import sys
from pathlib import Path

import matplotlib

# Use non-interactive backend
matplotlib.use("Agg")

import numpy as np
import pandas as pd

from optics_refine import OpticsGroupRegistry, TiltEstimationConfig, TiltEstimator
from optics_refine.constants import (
    BEAM_TILT_X,
    BEAM_TILT_Y,
    DEFOCUS_ANGLE,
    DEFOCUS_U,
    DEFOCUS_V,
    MICROGRAPH_NAME,
    OPTICS_GROUP,
    PIXEL_SIZE,
    SPHERICAL_ABERRATION,
    VOLTAGE,
)
from optics_refine.estimator import split_batches
from optics_refine.physics import spatial_frequencies, tilt_shift_phase

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def make_tables(args, rng):
    """Optics and particle tables of a synthetic single-group data set."""
    optics = pd.DataFrame({
        OPTICS_GROUP: [1],
        PIXEL_SIZE: [args.pixel_size],
        VOLTAGE: [args.voltage],
        SPHERICAL_ABERRATION: [args.cs],
    })

    n = args.particles
    defocus = rng.uniform(8000.0, 25000.0, size=n)
    particles = pd.DataFrame({
        OPTICS_GROUP: [1] * n,
        MICROGRAPH_NAME: [f"Simulated/mic_{i % args.micrographs:03d}.mrc" for i in range(n)],
        DEFOCUS_U: defocus + 200.0,
        DEFOCUS_V: defocus - 200.0,
        DEFOCUS_ANGLE: rng.uniform(0.0, 180.0, size=n),
    })
    return optics, particles


def make_loader(registry, args, rng):
    """Image loader producing noisy observations of a flat reference."""
    size = args.box
    group = registry.group(1)
    kx, ky = spatial_frequencies(size, group.pixel_size)
    phase = tilt_shift_phase(kx, ky, group.spherical_aberration, group.wavelength,
                             tilt_x=args.tilt[0], tilt_y=args.tilt[1])
    aberration = np.exp(1j * phase)

    def load(batch_id, particles):
        observed, predicted = [], []
        for _, row in particles.iterrows():
            pred = np.ones((size, size // 2 + 1), dtype=np.complex128)
            obs = registry.ctf_image(row, size) * pred * aberration
            if args.noise > 0:
                obs = obs + args.noise * (rng.normal(size=obs.shape) + 1j * rng.normal(size=obs.shape))
            observed.append(obs)
            predicted.append(pred)
        logger.debug(f"Simulated {len(particles)} particles for {batch_id}")
        return observed, predicted

    return load


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Simulate beam-tilted particles and estimate the tilt back",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python simulate_beam_tilt.py --tilt 1.5 -0.8
  python simulate_beam_tilt.py --tilt 1.5 -0.8 --max-n 3 --diag --output outputs/
        """,
    )

    parser.add_argument("--tilt", nargs=2, type=float, default=(1.0, -0.5), metavar=("X", "Y"),
                        help="Beam tilt to simulate in mrad (default: 1.0 -0.5)")
    parser.add_argument("--particles", type=int, default=200, help="Number of particles (default: 200)")
    parser.add_argument("--micrographs", type=int, default=4,
                        help="Number of micrographs, one batch each (default: 4)")
    parser.add_argument("--box", type=int, default=64, help="Box size in pixels (default: 64)")
    parser.add_argument("--pixel-size", type=float, default=2.0, help="Pixel size in A (default: 2.0)")
    parser.add_argument("--voltage", type=float, default=300.0, help="Voltage in kV (default: 300)")
    parser.add_argument("--cs", type=float, default=2.7, help="Spherical aberration in mm (default: 2.7)")
    parser.add_argument("--noise", type=float, default=0.2, help="Complex noise sigma (default: 0.2)")
    parser.add_argument("--max-n", type=int, default=0,
                        help="Maximum odd Zernike degree, < 3 fits tilt and shift only (default: 0)")
    parser.add_argument("--kmin", type=float, default=20.0, help="Inner resolution limit in A (default: 20)")
    parser.add_argument("--workers", type=int, default=1, help="Threads per batch (default: 1)")
    parser.add_argument("--diag", action="store_true", help="Write diagnostic maps and figures")
    parser.add_argument("--seed", type=int, default=0, help="Random seed (default: 0)")
    parser.add_argument(
        "--output",
        "-o",
        type=str,
        default="output",
        help="Output directory for checkpoints and diagnostics (default: 'output')",
    )

    args = parser.parse_args()

    if args.micrographs < 1 or args.particles < args.micrographs:
        logger.error("Need at least one particle per micrograph")
        sys.exit(1)

    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)
    rng = np.random.default_rng(args.seed)

    optics, particles = make_tables(args, rng)
    registry, particles = OpticsGroupRegistry.load_safely(particles, optics)

    config = TiltEstimationConfig(
        kmin=args.kmin,
        odd_aberr_max_n=args.max_n,
        diag=args.diag,
        num_workers=args.workers,
        output_dir=output_dir,
    )
    estimator = TiltEstimator(config)
    estimator.init(registry, args.box)

    logger.info(f"Estimating beam tilt of {len(particles)} simulated particles")
    try:
        results, table = estimator.run(split_batches(particles), make_loader(registry, args, rng))
    except ValueError as e:
        logger.error(f"Estimation failed: {e}", exc_info=True)
        sys.exit(1)

    table_path = output_dir / "optics_fitted.csv"
    table.to_csv(table_path, index=False)

    print("\n" + "=" * 60)
    print("BEAM TILT ESTIMATION")
    print("=" * 60)
    print(f"Simulated tilt:  ({args.tilt[0]:.4f}, {args.tilt[1]:.4f}) mrad")
    for group, result in results.items():
        print(f"Group {group} tilt:   ({result.tilt_x:.4f}, {result.tilt_y:.4f}) mrad")
        print(f"Group {group} shift:  ({result.shift_x:.4f}, {result.shift_y:.4f}) A")
        if result.odd_zernike is not None:
            print(f"Group {group} odd Zernike: {np.round(result.odd_zernike, 4).tolist()}")
    print(f"\nFitted optics table: {table_path}")
    print(table[[OPTICS_GROUP, BEAM_TILT_X, BEAM_TILT_Y]].to_string(index=False))
    print("=" * 60)


if __name__ == "__main__":
    main()
