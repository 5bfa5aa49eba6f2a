"""
Bundle adjustment problem assembly

A ``Problem`` wires residual blocks to parameter blocks and exposes the
residual vector and sparse Jacobian as functions of the stacked free
parameters, in the form ``scipy.optimize.least_squares`` consumes.

State vector layout:
    x = [δ_block0[free], δ_block1[free], ...]

Each δ is an increment from the block value at solve start (a local chart of
the block's manifold), so x0 is all zeros.

``residuals`` / ``jacobian`` return the robustified residuals (see
robust_loss); ``reprojection_residuals`` returns the raw pixel errors.
"""

import numpy as np
import logging
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, List, Optional, Set, Tuple
from dataclasses import dataclass, field, asdict
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from scipy.sparse import csr_matrix, lil_matrix
from tqdm import tqdm

from .config import RobustLossOptions
from .parameters import ParameterBlock, ParameterBlockManager
from .residuals import ReprojectionResidual, ResidualFactory, UnsupportedCameraModelError
from .robust_loss import RobustLossFunction
from ..sfm_data import SfMData

logger = logging.getLogger(__name__)

# Residual blocks per worker task
_CHUNK_SIZE = 256


class DegenerateProblemError(RuntimeError):
    """No residuals or no free parameters left after filtering"""

    def __init__(self, message: str, stats: Optional["ObservationStats"] = None):
        super().__init__(message)
        self.stats = stats


@dataclass
class ObservationStats:
    """Counts of observations kept and dropped while building a problem"""

    total: int = 0
    used: int = 0
    dropped_missing_view: int = 0
    dropped_missing_pose: int = 0
    dropped_missing_intrinsic: int = 0
    dropped_unsupported_model: int = 0
    landmarks_used: int = 0
    landmarks_skipped: int = 0
    unsupported_models: Counter = field(default_factory=Counter)

    @property
    def dropped(self) -> int:
        return (
            self.dropped_missing_view + self.dropped_missing_pose
            + self.dropped_missing_intrinsic + self.dropped_unsupported_model
        )

    def to_dict(self) -> Dict[str, int]:
        stats = asdict(self)
        stats["unsupported_models"] = dict(self.unsupported_models)
        stats["dropped"] = self.dropped
        return stats


@dataclass
class ResidualBlock:
    """One reprojection residual and the three blocks it reads"""

    residual: ReprojectionResidual
    pose: ParameterBlock
    intrinsic: ParameterBlock
    landmark: ParameterBlock

    def parameter_blocks(self) -> Tuple[ParameterBlock, ParameterBlock, ParameterBlock]:
        return self.pose, self.intrinsic, self.landmark


class Problem:
    """Nonlinear least-squares problem over pose, intrinsic and landmark blocks"""

    def __init__(self, loss: Optional[RobustLossOptions] = None, num_threads: int = 1):
        self.loss = loss or RobustLossOptions()
        self.loss_function = RobustLossFunction(self.loss)
        self.num_threads = max(1, int(num_threads))
        self._executor: Optional[ThreadPoolExecutor] = None

        self._parameter_blocks: Dict[Tuple[str, Hashable], ParameterBlock] = {}
        self._constant_keys: Set[Tuple[str, Hashable]] = set()
        self._residual_blocks: List[ResidualBlock] = []

        self._offsets: Dict[Tuple[str, Hashable], int] = {}
        self._num_free = 0
        self._rows: Optional[np.ndarray] = None
        self._cols: Optional[np.ndarray] = None
        self._data_starts: List[int] = []
        self._corrector_rows: Optional[np.ndarray] = None
        self._corrector_cols: Optional[np.ndarray] = None
        self._finalized = False

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_parameter_block(self, block: ParameterBlock) -> ParameterBlock:
        """Register a block; adding the same key again returns the first block"""
        existing = self._parameter_blocks.get(block.key)
        if existing is not None:
            return existing
        self._parameter_blocks[block.key] = block
        self._finalized = False
        return block

    def set_loss(self, loss: RobustLossOptions) -> None:
        self.loss = loss
        self.loss_function = RobustLossFunction(loss)

    def has_parameter_block(self, key: Tuple[str, Hashable]) -> bool:
        return key in self._parameter_blocks

    def set_parameter_block_constant(self, key: Tuple[str, Hashable]) -> None:
        if key not in self._parameter_blocks:
            raise KeyError(f"Unknown parameter block {key}")
        if key in self._constant_keys:
            raise ValueError(f"Parameter block {key} already marked constant")
        self._parameter_blocks[key].set_constant()
        self._constant_keys.add(key)
        self._finalized = False

    def is_parameter_block_constant(self, key: Tuple[str, Hashable]) -> bool:
        return self._parameter_blocks[key].is_constant

    def add_residual_block(
        self,
        residual: ReprojectionResidual,
        pose: ParameterBlock,
        intrinsic: ParameterBlock,
        landmark: ParameterBlock,
    ) -> ResidualBlock:
        for block in (pose, intrinsic, landmark):
            if block.key not in self._parameter_blocks:
                raise KeyError(f"Parameter block {block.key} must be added before its residuals")
        residual_block = ResidualBlock(residual, pose, intrinsic, landmark)
        self._residual_blocks.append(residual_block)
        self._finalized = False
        return residual_block

    def finalize(self) -> None:
        """Assign state offsets to free blocks and precompute the Jacobian pattern"""
        self._offsets = {}
        offset = 0
        for key, block in self._parameter_blocks.items():
            block.begin()
            if block.is_constant:
                continue
            self._offsets[key] = offset
            offset += block.num_free
        self._num_free = offset
        self._rows, self._cols = self._compute_jacobian_pattern()
        self._data_starts = self._chunk_data_offsets()

        # Block-diagonal (2x2 per residual block) pattern of the loss correction
        n = len(self._residual_blocks)
        base = 2 * np.arange(n)
        self._corrector_rows = (base[:, None] + np.array([0, 0, 1, 1])).ravel()
        self._corrector_cols = (base[:, None] + np.array([0, 1, 0, 1])).ravel()
        self._finalized = True

    # ------------------------------------------------------------------
    # Sizes
    # ------------------------------------------------------------------

    @property
    def num_residual_blocks(self) -> int:
        return len(self._residual_blocks)

    @property
    def num_residuals(self) -> int:
        return 2 * len(self._residual_blocks)

    @property
    def num_parameter_blocks(self) -> int:
        return len(self._parameter_blocks)

    @property
    def num_constant_parameter_blocks(self) -> int:
        return sum(1 for block in self._parameter_blocks.values() if block.is_constant)

    @property
    def num_parameters(self) -> int:
        return sum(block.size for block in self._parameter_blocks.values())

    @property
    def num_free_parameters(self) -> int:
        return sum(block.num_free for block in self._parameter_blocks.values())

    def parameter_blocks(self) -> List[ParameterBlock]:
        return list(self._parameter_blocks.values())

    def residual_blocks(self) -> List[ResidualBlock]:
        return list(self._residual_blocks)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def initial_state(self) -> np.ndarray:
        self._ensure_finalized()
        return np.zeros(self._num_free)

    def set_state(self, x: np.ndarray) -> None:
        """Write the state vector into the block storage"""
        self._ensure_finalized()
        for key, offset in self._offsets.items():
            block = self._parameter_blocks[key]
            block.apply_delta(x[offset:offset + block.num_free])

    def reprojection_residuals(self, x: np.ndarray) -> np.ndarray:
        """Raw projected-minus-observed pixel errors, shape (num_residuals,)"""
        self.set_state(x)
        out = np.empty(self.num_residuals)
        self._run_chunks(self._evaluate_chunk, out)
        return out

    def residuals(self, x: np.ndarray) -> np.ndarray:
        """Residuals after the robust loss; ½·||residuals(x)||² is the robust cost"""
        raw = self.reprojection_residuals(x)
        if not self.loss_function.enabled:
            return raw
        corrected, _ = self.loss_function.correct(raw.reshape(-1, 2))
        return corrected.ravel()

    def jacobian(self, x: np.ndarray) -> csr_matrix:
        """Jacobian of ``residuals`` with respect to the free state"""
        self.set_state(x)
        data = np.empty(self._rows.size)
        self._run_chunks(self._jacobian_chunk, data)
        J = csr_matrix(
            (data, (self._rows, self._cols)),
            shape=(self.num_residuals, self._num_free),
        )
        if not self.loss_function.enabled:
            return J

        raw = np.empty(self.num_residuals)
        self._run_chunks(self._evaluate_chunk, raw)
        _, M = self.loss_function.correct(raw.reshape(-1, 2))
        corrector = csr_matrix(
            (M.ravel(), (self._corrector_rows, self._corrector_cols)),
            shape=(self.num_residuals, self.num_residuals),
        )
        return (corrector @ J).tocsr()

    def dense_jacobian(self, x: np.ndarray) -> np.ndarray:
        return self.jacobian(x).toarray()

    def jacobian_sparsity(self) -> lil_matrix:
        """
        Compute sparsity pattern of Jacobian matrix

        Each residual block depends on:
        - 1 pose (≤ 6 free entries)
        - 1 intrinsic (≤ k free entries)
        - 1 landmark (≤ 3 free entries)
        """
        self._ensure_finalized()
        sparsity = lil_matrix((self.num_residuals, self._num_free), dtype=int)
        sparsity[self._rows, self._cols] = 1
        return sparsity

    @contextmanager
    def thread_pool(self, num_threads: int) -> Iterator["Problem"]:
        """Share one worker pool across every evaluation inside the block"""
        self.num_threads = max(1, int(num_threads))
        if self.num_threads == 1:
            yield self
            return
        with ThreadPoolExecutor(max_workers=self.num_threads) as executor:
            self._executor = executor
            try:
                yield self
            finally:
                self._executor = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_finalized(self) -> None:
        if not self._finalized:
            self.finalize()

    def _compute_jacobian_pattern(self) -> Tuple[np.ndarray, np.ndarray]:
        """Row/column indices of the non-zeros, in the order _jacobian_chunk fills them"""
        rows: List[np.ndarray] = []
        cols: List[np.ndarray] = []
        for index, residual_block in enumerate(self._residual_blocks):
            for block in residual_block.parameter_blocks():
                offset = self._offsets.get(block.key)
                if offset is None:
                    continue
                block_cols = np.arange(offset, offset + block.num_free)
                # Row-major (2, num_free) layout
                rows.append(np.repeat([2 * index, 2 * index + 1], block.num_free))
                cols.append(np.tile(block_cols, 2))
        if not rows:
            return np.empty(0, dtype=int), np.empty(0, dtype=int)
        return np.concatenate(rows), np.concatenate(cols)

    def _chunk_data_offsets(self) -> List[int]:
        """Start offset of every residual block inside the Jacobian data array"""
        starts = []
        position = 0
        for residual_block in self._residual_blocks:
            starts.append(position)
            for block in residual_block.parameter_blocks():
                if block.key in self._offsets:
                    position += 2 * block.num_free
        return starts

    def _run_chunks(self, worker, out: np.ndarray) -> None:
        n = len(self._residual_blocks)
        chunks = [(start, min(start + _CHUNK_SIZE, n)) for start in range(0, n, _CHUNK_SIZE)]
        tasks = [(start, stop, self._data_starts) for start, stop in chunks]

        if self._executor is None or len(tasks) <= 1:
            for start, stop, extra in tasks:
                worker(start, stop, out, extra)
            return

        futures = [self._executor.submit(worker, start, stop, out, extra) for start, stop, extra in tasks]
        for future in futures:
            future.result()

    def _evaluate_chunk(self, start: int, stop: int, out: np.ndarray, _data_starts=None) -> None:
        for index in range(start, stop):
            rb = self._residual_blocks[index]
            out[2 * index:2 * index + 2] = rb.residual.evaluate(
                rb.pose.values, rb.intrinsic.values, rb.landmark.values, rotation=rb.pose.rotation
            )

    def _jacobian_chunk(self, start: int, stop: int, data: np.ndarray, data_starts: List[int]) -> None:
        for index in range(start, stop):
            rb = self._residual_blocks[index]
            _, J_pose, J_intrinsic, J_point = rb.residual.evaluate_with_jacobians(
                rb.pose.values, rb.intrinsic.values, rb.landmark.values, rotation=rb.pose.rotation
            )
            position = data_starts[index]
            for block, J_local in ((rb.pose, J_pose), (rb.intrinsic, J_intrinsic), (rb.landmark, J_point)):
                if block.key not in self._offsets:
                    continue
                J = J_local @ block.free_jacobian()
                size = J.size
                data[position:position + size] = J.ravel()
                position += size

    def __repr__(self) -> str:
        return (
            f"Problem(residual_blocks={self.num_residual_blocks}, "
            f"parameter_blocks={self.num_parameter_blocks}, "
            f"constant_blocks={self.num_constant_parameter_blocks}, "
            f"free_parameters={self.num_free_parameters})"
        )


class ProblemBuilder:
    """
    Assemble a Problem from a reconstruction

    For every landmark and every observation whose view, pose and intrinsic
    resolve, one reprojection residual is added. Unresolvable observations are
    dropped silently and counted; unsupported camera models are dropped with a
    warning.
    """

    def __init__(
        self,
        residual_factory: Optional[ResidualFactory] = None,
        loss: Optional[RobustLossOptions] = None,
        show_progress: bool = False,
    ):
        self.residual_factory = residual_factory or ResidualFactory()
        self.loss = loss or RobustLossOptions()
        self.show_progress = show_progress
        self.logger = logging.getLogger(__name__)

    def build(self, sfm_data: SfMData, manager: ParameterBlockManager) -> Tuple[Problem, ObservationStats]:
        """
        Raises:
            DegenerateProblemError: zero residual blocks or zero free parameters
        """
        problem = Problem(loss=self.loss)
        stats = ObservationStats()
        unsupported_intrinsics: Set[int] = set()

        landmarks = tqdm(
            sfm_data.structure.items(),
            desc="Adding residual blocks",
            total=len(sfm_data.structure),
            disable=not self.show_progress,
        )

        for landmark_id, landmark in landmarks:
            valid = []  # [(view, residual), ...]
            for view_id, observation in landmark.observations.items():
                stats.total += 1

                view = sfm_data.views.get(view_id)
                if view is None:
                    stats.dropped_missing_view += 1
                    continue
                if view.pose_id not in manager.pose_parameters:
                    stats.dropped_missing_pose += 1
                    continue
                if view.intrinsic_id not in manager.intrinsic_parameters:
                    stats.dropped_missing_intrinsic += 1
                    continue

                intrinsic = sfm_data.intrinsics[view.intrinsic_id]
                try:
                    residual = self.residual_factory.create(intrinsic, observation)
                except UnsupportedCameraModelError as e:
                    stats.dropped_unsupported_model += 1
                    stats.unsupported_models[str(intrinsic.model)] += 1
                    if view.intrinsic_id not in unsupported_intrinsics:
                        unsupported_intrinsics.add(view.intrinsic_id)
                        self.logger.warning(
                            f"Intrinsic {view.intrinsic_id}: {e}; dropping its observations"
                        )
                    continue

                valid.append((view, residual))

            if not valid:
                stats.landmarks_skipped += 1
                continue

            landmark_block = manager.landmark_block(
                landmark_id, landmark, [view.pose_id for view, _ in valid]
            )
            self._add_block(problem, landmark_block)

            for view, residual in valid:
                pose_block = manager.pose_block(view.pose_id)
                intrinsic_block = manager.intrinsic_block(view.intrinsic_id, residual.spec)
                self._add_block(problem, pose_block)
                self._add_block(problem, intrinsic_block)
                problem.add_residual_block(residual, pose_block, intrinsic_block, landmark_block)
                stats.used += 1

            stats.landmarks_used += 1

        if stats.dropped:
            self.logger.info(
                f"Dropped {stats.dropped}/{stats.total} observations "
                f"(view={stats.dropped_missing_view}, pose={stats.dropped_missing_pose}, "
                f"intrinsic={stats.dropped_missing_intrinsic}, "
                f"unsupported model={stats.dropped_unsupported_model})"
            )

        if problem.num_residual_blocks == 0:
            raise DegenerateProblemError("Problem has no residual blocks", stats)
        if problem.num_free_parameters == 0:
            raise DegenerateProblemError("Problem has no free parameters", stats)

        problem.finalize()
        self.logger.debug(f"Built {problem}")
        return problem, stats

    @staticmethod
    def _add_block(problem: Problem, block: ParameterBlock) -> None:
        if problem.has_parameter_block(block.key):
            return
        problem.add_parameter_block(block)
        if block.is_constant:
            problem.set_parameter_block_constant(block.key)
