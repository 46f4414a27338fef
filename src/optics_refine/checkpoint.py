"""Per-batch, per-group checkpoints of tilt accumulators.

Each batch writes its accumulator pairs under keys (batch id, group id)
that no other batch touches, so batches can be processed in any order,
in parallel, or again after an interruption.
"""

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple, Union

import mrcfile
import numpy as np

from optics_refine.constants import BATCH_ID_EXTENSIONS, STAGING_SUFFIX, W_ACC_TAG, XY_ACC_TAG
from optics_refine.types import AccumulatorPair

logger = logging.getLogger(__name__)

__all__ = ['CheckpointStore', 'FileCheckpointStore', 'MemoryCheckpointStore']


class CheckpointStore(ABC):
    """Storage of accumulator pairs keyed by (batch id, optics group)."""

    @abstractmethod
    def exists(self, batch_id: str, group: int) -> bool:
        """True iff a complete pair is stored for the key."""

    @abstractmethod
    def write(self, batch_id: str, group: int, pair: AccumulatorPair) -> None:
        """Store a pair, replacing any previous pair under the key."""

    @abstractmethod
    def read(self, batch_id: str, group: int) -> Optional[AccumulatorPair]:
        """Return the stored pair, or None if the key has no complete pair."""

    def is_batch_finished(self, batch_id: str, groups: Iterable[int]) -> bool:
        """True iff every group of the batch has a complete pair."""
        return all(self.exists(batch_id, g) for g in groups)


class MemoryCheckpointStore(CheckpointStore):
    """In-process store, mainly for tests and single-process runs."""

    def __init__(self):
        self._pairs: Dict[Tuple[str, int], AccumulatorPair] = {}

    def exists(self, batch_id: str, group: int) -> bool:
        return (str(batch_id), int(group)) in self._pairs

    def write(self, batch_id: str, group: int, pair: AccumulatorPair) -> None:
        self._pairs[(str(batch_id), int(group))] = AccumulatorPair(pair.xy.copy(), pair.w.copy())

    def read(self, batch_id: str, group: int) -> Optional[AccumulatorPair]:
        pair = self._pairs.get((str(batch_id), int(group)))
        if pair is None:
            return None
        return AccumulatorPair(pair.xy.copy(), pair.w.copy())


class FileCheckpointStore(CheckpointStore):
    """
    MRC file store.

    A pair for batch root R and group g consists of
    ``R_xyAcc_optics-group_g_real.mrc``, ``R_xyAcc_optics-group_g_imag.mrc``
    and ``R_wAcc_optics-group_g.mrc``. The weight file is published last and
    acts as the commit marker of the pair.
    """

    def __init__(self, output_dir: Union[str, Path]):
        self.output_dir = Path(output_dir)

    def batch_root(self, batch_id: str) -> Path:
        """
        Output file root of a batch: the batch id relative to the output
        directory, without its image extension. Other dotted parts are
        kept, so "run.001" and "run.002" stay distinct.
        """
        name = Path(str(batch_id))
        if name.is_absolute():
            name = Path(*name.parts[1:])
        if name.suffix.lower() in BATCH_ID_EXTENSIONS:
            name = name.with_suffix("")
        return self.output_dir / name

    def paths(self, batch_id: str, group: int) -> Tuple[Path, Path, Path]:
        """(real, imag, weight) file paths of a pair."""
        root = str(self.batch_root(batch_id))
        xy = f"{root}{XY_ACC_TAG}{int(group)}"
        return (
            Path(f"{xy}_real.mrc"),
            Path(f"{xy}_imag.mrc"),
            Path(f"{root}{W_ACC_TAG}{int(group)}.mrc"),
        )

    def exists(self, batch_id: str, group: int) -> bool:
        return all(p.exists() for p in self.paths(batch_id, group))

    def write(self, batch_id: str, group: int, pair: AccumulatorPair) -> None:
        """
        Stage all three files, then publish them with the weight file last.

        A reader therefore never sees a weight file next to components from
        a different write.
        """
        real_path, imag_path, weight_path = self.paths(batch_id, group)
        real_path.parent.mkdir(parents=True, exist_ok=True)

        staged = []
        for path, data in (
            (real_path, pair.xy.real),
            (imag_path, pair.xy.imag),
            (weight_path, pair.w),
        ):
            tmp = path.with_name(path.name + STAGING_SUFFIX)
            _write_mrc(tmp, data)
            staged.append((tmp, path))

        # Withdraw the commit marker before replacing the components
        if weight_path.exists():
            weight_path.unlink()

        for tmp, path in staged:
            os.replace(tmp, path)

        logger.debug(f"Wrote checkpoint for batch {batch_id}, optics group {group}")

    def read(self, batch_id: str, group: int) -> Optional[AccumulatorPair]:
        if not self.exists(batch_id, group):
            return None

        real_path, imag_path, weight_path = self.paths(batch_id, group)
        try:
            weight = _read_mrc(weight_path)
            real = _read_mrc(real_path)
            imag = _read_mrc(imag_path)
        except FileNotFoundError as e:
            # Withdrawn by a concurrent write after the existence check
            logger.debug(f"Checkpoint of batch {batch_id}, optics group {group} vanished: {e}")
            return None

        if not (real.shape == imag.shape == weight.shape):
            raise ValueError(
                f"Checkpoint of batch {batch_id}, optics group {group} has mismatched shapes: "
                f"{real.shape}, {imag.shape}, {weight.shape}"
            )

        return AccumulatorPair(real.astype(np.float64) + 1j * imag.astype(np.float64),
                               weight.astype(np.float64))


def _write_mrc(path: Path, data: np.ndarray) -> None:
    with mrcfile.new(str(path), overwrite=True) as mrc:
        mrc.set_data(np.ascontiguousarray(data, dtype=np.float32))


def _read_mrc(path: Path) -> np.ndarray:
    try:
        with mrcfile.open(str(path), mode="r", permissive=True) as mrc:
            if mrc.data is None:
                raise ValueError("no image data")
            return np.array(mrc.data)
    except FileNotFoundError:
        raise
    except (OSError, ValueError) as e:
        raise ValueError(f"Failed to read checkpoint image {path}: {e}") from e
