"""
Solver driver

Runs scipy.optimize.least_squares (trust region reflective) on a Problem and
captures the outcome. Solver failures are reported through SolverOutcome, the
caller decides what to do with them.

Option mapping:
    DENSE   -> tr_solver="exact", dense Jacobian
    SPARSE  -> tr_solver="lsmr", CSR Jacobian
    JACOBI  -> x_scale="jac"
    robust loss -> applied inside Problem.residuals (see robust_loss)
"""

import numpy as np
import logging
import time
from typing import Any, Dict, Optional
from dataclasses import dataclass
from scipy.optimize import least_squares

from .config import (
    Preconditioner,
    RobustLossOptions,
    SolverOptions,
    SparseBackend,
)
from .problem import Problem

logger = logging.getLogger(__name__)

_STATUS_NAMES = {
    -1: "IMPROPER_INPUT",
    0: "MAX_ITERATIONS",
    1: "GRADIENT_TOLERANCE",
    2: "FUNCTION_TOLERANCE",
    3: "PARAMETER_TOLERANCE",
    4: "FUNCTION_AND_PARAMETER_TOLERANCE",
}


@dataclass
class SolverSummary:
    """What happened during one solve"""

    termination: str
    message: str = ""
    status: Optional[int] = None

    num_residual_blocks: int = 0
    num_residuals: int = 0
    num_parameter_blocks: int = 0
    num_constant_parameter_blocks: int = 0
    num_parameters: int = 0
    num_effective_parameters: int = 0

    # ½·Σ||r||² without robust loss
    initial_cost: float = float("nan")
    final_cost: float = float("nan")
    # Objective actually minimized (robust loss applied)
    final_robust_cost: float = float("nan")

    num_function_evaluations: int = 0
    num_jacobian_evaluations: int = 0
    elapsed_seconds: float = 0.0

    linear_solver: str = ""
    loss: str = ""

    @classmethod
    def empty(cls, termination: str, message: str = "") -> "SolverSummary":
        return cls(termination=termination, message=message)

    @property
    def initial_rmse(self) -> float:
        if self.num_residuals == 0:
            return float("nan")
        return float(np.sqrt(2.0 * self.initial_cost / self.num_residuals))

    @property
    def final_rmse(self) -> float:
        if self.num_residuals == 0:
            return float("nan")
        return float(np.sqrt(2.0 * self.final_cost / self.num_residuals))

    def brief_report(self) -> str:
        return (
            f"Solver Summary: {self.termination}, "
            f"evaluations={self.num_function_evaluations}, "
            f"jacobian evaluations={self.num_jacobian_evaluations}, "
            f"initial cost={self.initial_cost:.6e}, final cost={self.final_cost:.6e}"
        )

    def full_report(self) -> str:
        lines = [
            "Solver Summary",
            f"  Residual blocks          {self.num_residual_blocks}",
            f"  Residuals                {self.num_residuals}",
            f"  Parameter blocks         {self.num_parameter_blocks}",
            f"  Constant blocks          {self.num_constant_parameter_blocks}",
            f"  Parameters               {self.num_parameters}",
            f"  Effective parameters     {self.num_effective_parameters}",
            f"  Linear solver            {self.linear_solver}",
            f"  Loss                     {self.loss}",
            f"  Initial cost             {self.initial_cost:.6e}",
            f"  Final cost               {self.final_cost:.6e}",
            f"  Final robust cost        {self.final_robust_cost:.6e}",
            f"  Initial RMSE             {self.initial_rmse:.6f}",
            f"  Final RMSE               {self.final_rmse:.6f}",
            f"  Function evaluations     {self.num_function_evaluations}",
            f"  Jacobian evaluations     {self.num_jacobian_evaluations}",
            f"  Time (s)                 {self.elapsed_seconds:.3f}",
            f"  Termination              {self.termination}",
        ]
        if self.message:
            lines.append(f"  Message                  {self.message}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "termination": self.termination,
            "message": self.message,
            "status": self.status,
            "num_residual_blocks": self.num_residual_blocks,
            "num_residuals": self.num_residuals,
            "num_parameter_blocks": self.num_parameter_blocks,
            "num_effective_parameters": self.num_effective_parameters,
            "initial_cost": self.initial_cost,
            "final_cost": self.final_cost,
            "final_robust_cost": self.final_robust_cost,
            "initial_rmse": self.initial_rmse,
            "final_rmse": self.final_rmse,
            "num_function_evaluations": self.num_function_evaluations,
            "elapsed_seconds": self.elapsed_seconds,
        }


@dataclass
class SolverOutcome:
    """Result of SolverDriver.solve; the problem blocks hold the final values"""

    success: bool
    summary: SolverSummary
    problem: Optional[Problem] = None

    def __bool__(self) -> bool:
        return self.success


class SolverDriver:
    """Configures and runs the nonlinear least-squares solver"""

    def __init__(self, options: Optional[SolverOptions] = None):
        self.options = options or SolverOptions.dense()
        self.logger = logging.getLogger(__name__)

    def least_squares_kwargs(self) -> Dict[str, Any]:
        options = self.options
        kwargs: Dict[str, Any] = dict(
            method="trf",
            ftol=options.ftol,
            xtol=options.xtol,
            gtol=options.gtol,
            max_nfev=options.max_iterations,
            x_scale="jac" if options.preconditioner is Preconditioner.JACOBI else 1.0,
            # Robust loss is already folded into the problem's residuals
            loss="linear",
            verbose=2 if options.verbose else 0,
        )
        if options.is_sparse:
            kwargs["tr_solver"] = "lsmr"
            kwargs["tr_options"] = {
                "regularize": options.sparse_backend is SparseBackend.REGULARIZED_LSMR
            }
        else:
            kwargs["tr_solver"] = "exact"
        return kwargs

    def solve(self, problem: Problem, loss: Optional[RobustLossOptions] = None) -> SolverOutcome:
        """
        Run the solver to convergence or its iteration limit

        Args:
            problem: finalized Problem (its blocks are mutated in place)
            loss: robust loss policy, defaults to the problem's

        Returns:
            SolverOutcome; success=False on numerical failure or when the
            iteration limit is hit
        """
        if loss is not None:
            problem.set_loss(loss)
        loss = problem.loss

        with problem.thread_pool(self.options.thread_count):
            return self._solve(problem, loss)

    def _solve(self, problem: Problem, loss: RobustLossOptions) -> SolverOutcome:
        kwargs = self.least_squares_kwargs()

        x0 = problem.initial_state()
        initial_residuals = problem.reprojection_residuals(x0)
        summary = SolverSummary(
            termination="NOT_RUN",
            num_residual_blocks=problem.num_residual_blocks,
            num_residuals=problem.num_residuals,
            num_parameter_blocks=problem.num_parameter_blocks,
            num_constant_parameter_blocks=problem.num_constant_parameter_blocks,
            num_parameters=problem.num_parameters,
            num_effective_parameters=problem.num_free_parameters,
            initial_cost=0.5 * float(initial_residuals @ initial_residuals),
            linear_solver=(
                f"{self.options.linear_solver.value}/{kwargs['tr_solver']}"
            ),
            loss=f"{loss.loss.value}(threshold={loss.threshold})",
        )

        jac = problem.jacobian if self.options.is_sparse else problem.dense_jacobian

        self.logger.info(
            f"Running scipy least_squares: {problem.num_residuals} residuals, "
            f"{problem.num_free_parameters} free parameters, {summary.linear_solver}"
        )
        start_time = time.time()
        try:
            result = least_squares(problem.residuals, x0, jac=jac, **kwargs)
        except (ValueError, np.linalg.LinAlgError) as e:
            problem.set_state(x0)
            summary.elapsed_seconds = time.time() - start_time
            summary.termination = "FAILURE"
            summary.message = str(e)
            summary.final_cost = summary.initial_cost
            self.logger.warning(f"Solver failed: {e}")
            return SolverOutcome(success=False, summary=summary, problem=problem)

        summary.elapsed_seconds = time.time() - start_time

        # Leave the blocks at the returned optimum
        final_residuals = problem.reprojection_residuals(result.x)

        summary.status = int(result.status)
        summary.termination = _STATUS_NAMES.get(result.status, "UNKNOWN")
        summary.message = str(result.message)
        summary.final_cost = 0.5 * float(final_residuals @ final_residuals)
        summary.final_robust_cost = float(result.cost)
        summary.num_function_evaluations = int(result.nfev)
        summary.num_jacobian_evaluations = int(result.njev or 0)

        success = result.status > 0 and np.isfinite(summary.final_cost)

        if success:
            self.logger.info(
                f"Optimization finished: cost={summary.final_cost:.4f}, "
                f"evaluations={summary.num_function_evaluations}, termination={summary.termination}"
            )
        else:
            self.logger.warning(f"Optimization did not converge: {summary.brief_report()}")

        if self.options.print_full_summary:
            self.logger.info(summary.full_report())

        return SolverOutcome(success=bool(success), summary=summary, problem=problem)
