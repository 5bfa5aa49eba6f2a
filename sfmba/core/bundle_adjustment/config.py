"""
Configuration management for Bundle Adjustment

Uses frozen dataclasses: one configuration value is built up front and passed
explicitly to every stage, never mutated while an adjustment is running.
"""

import psutil
from dataclasses import dataclass, field, replace, asdict
from enum import Enum, Flag
from typing import Any, Dict


class BARefine(Flag):
    """Parameter categories that may be optimized"""
    NONE = 0
    POSE_ROTATION = 1
    POSE_TRANSLATION = 2
    INTRINSIC_FOCAL = 4
    INTRINSIC_PRINCIPAL_POINT = 8
    INTRINSIC_DISTORTION = 16
    STRUCTURE = 32

    POSES = POSE_ROTATION | POSE_TRANSLATION
    INTRINSICS = INTRINSIC_FOCAL | INTRINSIC_PRINCIPAL_POINT | INTRINSIC_DISTORTION
    ALL = POSES | INTRINSICS | STRUCTURE


REFINE_ALL = BARefine.ALL


class LinearSolverType(Enum):
    """Trust-region subproblem strategy"""
    DENSE = "dense"
    SPARSE = "sparse"


class SparseBackend(Enum):
    """Sparse trust-region solver (only used with LinearSolverType.SPARSE)"""
    LSMR = "lsmr"
    REGULARIZED_LSMR = "regularized_lsmr"


class Preconditioner(Enum):
    """Variable scaling applied by the solver"""
    JACOBI = "jacobi"  # scale by inverse Jacobian column norms
    IDENTITY = "identity"


class RobustLoss(Enum):
    """Loss shapes, named as in scipy.optimize.least_squares"""
    LINEAR = "linear"
    HUBER = "huber"
    SOFT_L1 = "soft_l1"
    CAUCHY = "cauchy"
    ARCTAN = "arctan"


def default_thread_count() -> int:
    return max(1, min(psutil.cpu_count() or 1, 8))


@dataclass(frozen=True)
class SolverOptions:
    """Options forwarded to the nonlinear least-squares solver"""

    verbose: bool = False
    thread_count: int = field(default_factory=default_thread_count)
    print_full_summary: bool = False

    linear_solver: LinearSolverType = LinearSolverType.DENSE
    sparse_backend: SparseBackend = SparseBackend.LSMR
    preconditioner: Preconditioner = Preconditioner.JACOBI

    # Limits / convergence
    max_iterations: int = 500
    ftol: float = 1e-6
    xtol: float = 1e-8
    gtol: float = 1e-10

    def __post_init__(self):
        if self.thread_count < 1:
            raise ValueError(f"thread_count must be >= 1, got {self.thread_count}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        for name in ("ftol", "xtol", "gtol"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")

    @classmethod
    def dense(cls, **overrides) -> "SolverOptions":
        """Preset for small problems"""
        base = dict(
            linear_solver=LinearSolverType.DENSE,
            preconditioner=Preconditioner.JACOBI,
        )
        base.update(overrides)
        return cls(**base)

    @classmethod
    def sparse(cls, **overrides) -> "SolverOptions":
        """Preset for large problems"""
        base = dict(
            linear_solver=LinearSolverType.SPARSE,
            sparse_backend=SparseBackend.LSMR,
            preconditioner=Preconditioner.JACOBI,
        )
        base.update(overrides)
        return cls(**base)

    def with_overrides(self, **overrides) -> "SolverOptions":
        return replace(self, **overrides)

    @property
    def is_sparse(self) -> bool:
        return self.linear_solver is LinearSolverType.SPARSE


@dataclass(frozen=True)
class RobustLossOptions:
    """Bounded-influence loss applied to every residual"""

    loss: RobustLoss = RobustLoss.HUBER

    # Inlier/outlier transition, in pixels
    threshold: float = 4.0

    def __post_init__(self):
        if self.threshold <= 0:
            raise ValueError(f"Robust loss threshold must be positive, got {self.threshold}")

    @property
    def enabled(self) -> bool:
        return self.loss is not RobustLoss.LINEAR


@dataclass(frozen=True)
class ReconstructionGraphConfig:
    """Configuration for the partial-refinement reconstruction graph"""

    # Minimum shared landmarks to connect two views
    min_covisibility: int = 1

    # Views within this many hops of a touched view are refined too
    max_hop_distance: int = 0

    def __post_init__(self):
        if self.min_covisibility < 1:
            raise ValueError(f"min_covisibility must be >= 1, got {self.min_covisibility}")
        if self.max_hop_distance < 0:
            raise ValueError(f"max_hop_distance must be >= 0, got {self.max_hop_distance}")


_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class BundleAdjustmentConfig:
    """Main configuration for Bundle Adjustment"""

    solver: SolverOptions = field(default_factory=SolverOptions)
    loss: RobustLossOptions = field(default_factory=RobustLossOptions)
    graph: ReconstructionGraphConfig = field(default_factory=ReconstructionGraphConfig)

    # Hold the lowest referenced pose constant in full refinement with free structure
    fix_gauge: bool = False

    # tqdm progress while adding residual blocks
    show_progress: bool = False

    # Logging level: "DEBUG", "INFO", "WARNING", "ERROR"
    log_level: str = "INFO"

    def __post_init__(self):
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"Invalid log_level: {self.log_level}")

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "BundleAdjustmentConfig":
        """Create config from dictionary (for JSON loading)"""
        config_dict = dict(config_dict)

        solver_dict = dict(config_dict.pop("solver", {}))
        for key, enum_type in (
            ("linear_solver", LinearSolverType),
            ("sparse_backend", SparseBackend),
            ("preconditioner", Preconditioner),
        ):
            if key in solver_dict:
                solver_dict[key] = enum_type(solver_dict[key])

        loss_dict = dict(config_dict.pop("loss", {}))
        if "loss" in loss_dict:
            loss_dict["loss"] = RobustLoss(loss_dict["loss"])

        graph = ReconstructionGraphConfig(**config_dict.pop("graph", {}))

        return cls(
            solver=SolverOptions(**solver_dict),
            loss=RobustLossOptions(**loss_dict),
            graph=graph,
            **config_dict
        )

    def to_dict(self) -> Dict[str, Any]:
        """Export config to dictionary"""
        solver = asdict(self.solver)
        solver["linear_solver"] = self.solver.linear_solver.value
        solver["sparse_backend"] = self.solver.sparse_backend.value
        solver["preconditioner"] = self.solver.preconditioner.value
        return {
            "solver": solver,
            "loss": {"loss": self.loss.loss.value, "threshold": self.loss.threshold},
            "graph": asdict(self.graph),
            "fix_gauge": self.fix_gauge,
            "show_progress": self.show_progress,
            "log_level": self.log_level,
        }
