"""
Nelder-Mead ("amoeba") downhill simplex optimizer.

The optimizer treats its cost function as a black box: only `get_value`
and `get_number_of_parameters` are used, so objectives without
derivatives (such as the FFT convolution cost) can be searched. The
simplex is either built automatically around the starting position or
from user supplied per-axis deltas. With restarts enabled, the search is
re-seeded at the best position found with half the previous edge length
until the evaluation budget runs out or two consecutive runs agree.

One "iteration" is one cost function evaluation; the restart loop shares
the same budget.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import numpy as np
from tqdm import tqdm

# reflection, expansion, contraction and shrink coefficients
ALPHA = 1.0
GAMMA = 2.0
RHO = 0.5
SIGMA = 0.5

_TINY = 1e-10


class OptimizerConfigurationError(ValueError):
    """Raised when the optimizer cannot start with its current settings."""


class OptimizerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max iterations reached"
    CANCELLED = "cancelled"


@dataclass
class OptimizationResult:
    """
    Outcome of one `start_optimization` call.

    Parameters
    ----------
    parameters : ndarray
        Best position found.
    value : float
        Cost function value at `parameters`.
    state : OptimizerState
        Terminal state.
    stop_condition_description : str
        Human readable stop reason.
    number_of_evaluations : int
        Cost function evaluations used.
    number_of_restarts : int
        Restarts performed after the first run.
    """

    parameters: np.ndarray
    value: float
    state: OptimizerState
    stop_condition_description: str
    number_of_evaluations: int
    number_of_restarts: int = 0


class _StopSearch(Exception):
    def __init__(self, state: OptimizerState):
        super().__init__(state.value)
        self.state = state


class FFTAmoebaOptimizer:
    """
    Derivative-free simplex optimizer with optional restarts.

    Parameters
    ----------
    cost_function : object, optional
        Anything with `get_value(parameters)` and
        `get_number_of_parameters()`.
    maximum_number_of_iterations : int
        Cost function evaluation budget.
    automatic_initial_simplex : bool
        Build the initial simplex from the starting position. Turned off
        by `set_initial_simplex_delta`.
    initial_simplex_delta : sequence of float, optional
        Per-axis edge lengths of the initial simplex.
    optimize_with_restarts : bool
        Re-run the search from the best position after convergence.
    fractional_tolerance : float
        Relative spread of the cost values at the simplex corners below
        which the function criterion is met.
    parameters_convergence_tolerance : float
        Simplex diameter (max per-axis distance from the best corner)
        below which the parameter criterion is met. Also bounds the
        parameter change between restarts.
    maximize : bool
        Search for the maximum instead of the minimum.
    show_progress : bool
        Show a tqdm bar over the evaluation budget.
    debug : bool
        If True, print simplex steps.
    """

    DEFAULT_MAXIMUM_NUMBER_OF_ITERATIONS = 500
    # automatic simplex: each corner moves its axis by 5%, or by a fixed
    # amount when that coordinate is zero
    RELATIVE_SIMPLEX_DIAMETER = 0.05
    ZERO_TERM_DELTA = 0.00025

    def __init__(
        self,
        cost_function=None,
        maximum_number_of_iterations: int = DEFAULT_MAXIMUM_NUMBER_OF_ITERATIONS,
        automatic_initial_simplex: bool = True,
        initial_simplex_delta: Optional[Sequence[float]] = None,
        optimize_with_restarts: bool = False,
        fractional_tolerance: float = 1e-4,
        parameters_convergence_tolerance: float = 1e-8,
        maximize: bool = False,
        show_progress: bool = False,
        debug: bool = False,
    ):
        self._cost_function = cost_function
        self.maximum_number_of_iterations = maximum_number_of_iterations
        self.automatic_initial_simplex = automatic_initial_simplex
        self._initial_simplex_delta = (
            None if initial_simplex_delta is None
            else np.asarray(initial_simplex_delta, dtype=np.float64)
        )
        self.optimize_with_restarts = optimize_with_restarts
        self.fractional_tolerance = fractional_tolerance
        self.parameters_convergence_tolerance = parameters_convergence_tolerance
        self.maximize = bool(maximize)
        self.show_progress = bool(show_progress)
        self._debug = bool(debug)

        self._initial_position: Optional[np.ndarray] = None
        self._cancel = threading.Event()
        self._state = OptimizerState.IDLE
        self._stop_condition_description = "FFTAmoebaOptimizer: not started"
        self._evaluations = 0
        self._restarts = 0
        self._budget = 0
        self._best_position: Optional[np.ndarray] = None
        self._best_internal = np.inf
        self._progress = None

    # ------------------------------------------------------------------
    # configuration
    # ------------------------------------------------------------------

    @property
    def cost_function(self):
        return self._cost_function

    def set_cost_function(self, cost_function) -> None:
        self._cost_function = cost_function

    @property
    def maximum_number_of_iterations(self) -> int:
        return self._maximum_number_of_iterations

    @maximum_number_of_iterations.setter
    def maximum_number_of_iterations(self, value: int):
        self._maximum_number_of_iterations = int(value)

    @property
    def automatic_initial_simplex(self) -> bool:
        return self._automatic_initial_simplex

    @automatic_initial_simplex.setter
    def automatic_initial_simplex(self, flag: bool):
        self._automatic_initial_simplex = bool(flag)

    @property
    def initial_simplex_delta(self) -> Optional[np.ndarray]:
        return None if self._initial_simplex_delta is None else self._initial_simplex_delta.copy()

    def set_initial_simplex_delta(
        self,
        initial_simplex_delta: Sequence[float],
        automatic_initial_simplex: bool = False,
    ) -> None:
        """
        Set per-axis deltas for the initial simplex.

        Corner i of the simplex is the starting position with
        `initial_simplex_delta[i]` added to coordinate i. This switches
        to the manual simplex unless `automatic_initial_simplex` is True.
        """
        self._initial_simplex_delta = np.asarray(initial_simplex_delta, dtype=np.float64)
        self._automatic_initial_simplex = bool(automatic_initial_simplex)

    @property
    def optimize_with_restarts(self) -> bool:
        return self._optimize_with_restarts

    @optimize_with_restarts.setter
    def optimize_with_restarts(self, flag: bool):
        self._optimize_with_restarts = bool(flag)

    @property
    def fractional_tolerance(self) -> float:
        return self._fractional_tolerance

    @fractional_tolerance.setter
    def fractional_tolerance(self, value: float):
        self._fractional_tolerance = float(value)

    @property
    def parameters_convergence_tolerance(self) -> float:
        return self._parameters_convergence_tolerance

    @parameters_convergence_tolerance.setter
    def parameters_convergence_tolerance(self, value: float):
        self._parameters_convergence_tolerance = float(value)

    @property
    def debug(self) -> bool:
        return self._debug

    @debug.setter
    def debug(self, flag: bool):
        self._debug = bool(flag)

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        return None if self._initial_position is None else self._initial_position.copy()

    def set_initial_position(self, position: Sequence[float]) -> None:
        self._initial_position = np.asarray(position, dtype=np.float64).copy()

    # ------------------------------------------------------------------
    # run state
    # ------------------------------------------------------------------

    @property
    def state(self) -> OptimizerState:
        return self._state

    @property
    def stop_condition_description(self) -> str:
        return self._stop_condition_description

    @property
    def number_of_evaluations(self) -> int:
        return self._evaluations

    @property
    def current_position(self) -> Optional[np.ndarray]:
        """
        Best position found so far.
        """
        return None if self._best_position is None else self._best_position.copy()

    @property
    def value(self) -> float:
        """
        Cost function value at `current_position`.
        """
        if self._evaluations == 0:
            return float("nan")
        return self._external(self._best_internal)

    def cancel(self) -> None:
        """
        Ask a running search to stop before its next evaluation.
        """
        self._cancel.set()

    def __repr__(self) -> str:
        delta = None if self._initial_simplex_delta is None else self._initial_simplex_delta.tolist()
        return (
            f"{type(self).__name__}("
            f"maximum_number_of_iterations={self._maximum_number_of_iterations}, "
            f"automatic_initial_simplex={self._automatic_initial_simplex}, "
            f"initial_simplex_delta={delta}, "
            f"optimize_with_restarts={self._optimize_with_restarts}, "
            f"fractional_tolerance={self._fractional_tolerance}, "
            f"parameters_convergence_tolerance={self._parameters_convergence_tolerance}, "
            f"maximize={self.maximize}, "
            f"state={self._state.value})"
        )

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _validate_settings(self) -> np.ndarray:
        """
        Check every setting needed to start and return the start position.
        """
        if self._cost_function is None:
            raise OptimizerConfigurationError("No cost function has been set.")
        if self._initial_position is None:
            raise OptimizerConfigurationError("No initial position has been set.")
        if self._maximum_number_of_iterations < 1:
            raise OptimizerConfigurationError(
                f"maximum_number_of_iterations must be positive, "
                f"got {self._maximum_number_of_iterations}."
            )
        if not self._fractional_tolerance > 0:
            raise OptimizerConfigurationError(
                f"fractional_tolerance must be positive, got {self._fractional_tolerance}."
            )
        if not self._parameters_convergence_tolerance > 0:
            raise OptimizerConfigurationError(
                f"parameters_convergence_tolerance must be positive, "
                f"got {self._parameters_convergence_tolerance}."
            )

        n = int(self._cost_function.get_number_of_parameters())
        x0 = self._initial_position
        if x0.shape != (n,):
            raise OptimizerConfigurationError(
                f"Initial position has shape {x0.shape}, cost function expects ({n},)."
            )
        if not np.all(np.isfinite(x0)):
            raise OptimizerConfigurationError("Initial position contains non-finite values.")

        if not self._automatic_initial_simplex:
            delta = self._initial_simplex_delta
            if delta is None:
                raise OptimizerConfigurationError(
                    "Manual initial simplex requested but no initial_simplex_delta was set."
                )
            if delta.shape != (n,):
                raise OptimizerConfigurationError(
                    f"initial_simplex_delta has shape {delta.shape}, expected ({n},)."
                )
            if not np.all(np.isfinite(delta)) or np.any(delta == 0):
                raise OptimizerConfigurationError(
                    "initial_simplex_delta must be finite and non-zero on every axis; "
                    "otherwise the initial simplex is degenerate."
                )
        return x0.copy()

    def _initial_delta(self, x0: np.ndarray) -> np.ndarray:
        if not self._automatic_initial_simplex:
            return self._initial_simplex_delta.copy()
        delta = self.RELATIVE_SIMPLEX_DIAMETER * x0
        delta[x0 == 0] = self.ZERO_TERM_DELTA
        return delta

    def _internal(self, value: float) -> float:
        return -value if self.maximize else value

    def _external(self, internal: float) -> float:
        return -internal if self.maximize else internal

    def _evaluate(self, x: np.ndarray) -> float:
        if self._cancel.is_set():
            raise _StopSearch(OptimizerState.CANCELLED)
        if self._evaluations >= self._budget:
            raise _StopSearch(OptimizerState.MAX_ITERATIONS_REACHED)

        f = self._internal(float(self._cost_function.get_value(x)))
        if np.isnan(f):
            f = np.inf
        self._evaluations += 1
        if self._progress is not None:
            self._progress.update(1)
        if f < self._best_internal or self._best_position is None:
            self._best_internal = f
            self._best_position = x.copy()
        return f

    def _within_fractional_tolerance(self, f_a: float, f_b: float) -> bool:
        if not (np.isfinite(f_a) and np.isfinite(f_b)):
            return False
        spread = 2.0 * abs(f_a - f_b) / (abs(f_a) + abs(f_b) + _TINY)
        return spread <= self._fractional_tolerance

    def _has_converged(self, simplex: np.ndarray, fvals: np.ndarray) -> bool:
        diameter = float(np.max(np.abs(simplex[1:] - simplex[0])))
        return (
            diameter <= self._parameters_convergence_tolerance
            and self._within_fractional_tolerance(fvals[0], fvals[-1])
        )

    def _run_simplex(self, x0: np.ndarray, delta: np.ndarray):
        """
        One Nelder-Mead search from `x0`; returns (best_x, best_f).
        """
        n = x0.size
        simplex = np.tile(x0, (n + 1, 1))
        for i in range(n):
            simplex[i + 1, i] += delta[i]
        fvals = np.array([self._evaluate(v) for v in simplex])

        step = 0
        while True:
            order = np.argsort(fvals, kind="stable")
            simplex = simplex[order]
            fvals = fvals[order]
            if self._has_converged(simplex, fvals):
                return simplex[0].copy(), float(fvals[0])

            centroid = simplex[:-1].mean(axis=0)
            worst = simplex[-1]

            xr = centroid + ALPHA * (centroid - worst)
            fr = self._evaluate(xr)
            if fr < fvals[0]:
                xe = centroid + GAMMA * (xr - centroid)
                fe = self._evaluate(xe)
                if fe < fr:
                    simplex[-1], fvals[-1], action = xe, fe, "expand"
                else:
                    simplex[-1], fvals[-1], action = xr, fr, "reflect"
            elif fr < fvals[-2]:
                simplex[-1], fvals[-1], action = xr, fr, "reflect"
            else:
                if fr < fvals[-1]:
                    xc = centroid + RHO * (xr - centroid)
                    fc = self._evaluate(xc)
                    accept = fc <= fr
                else:
                    xc = centroid + RHO * (worst - centroid)
                    fc = self._evaluate(xc)
                    accept = fc < fvals[-1]
                if accept:
                    simplex[-1], fvals[-1], action = xc, fc, "contract"
                else:
                    for i in range(1, n + 1):
                        simplex[i] = simplex[0] + SIGMA * (simplex[i] - simplex[0])
                        fvals[i] = self._evaluate(simplex[i])
                    action = "shrink"

            step += 1
            if self._debug:
                print(
                    f"[amoeba] step {step:4d} {action:8s} "
                    f"best={self._external(fvals.min()):.6g} evals={self._evaluations}"
                )

    def _restart(self, delta: np.ndarray) -> int:
        """
        Re-run the search from the best position with halved edges.

        Returns the number of restarts performed before the two most
        recent runs agreed. Running out of budget ends the loop through
        `_StopSearch`.
        """
        restarts = 0
        while True:
            delta = delta / 2.0
            previous_x = self._best_position.copy()
            previous_f = self._best_internal
            restarts += 1
            self._restarts = restarts
            current_x, current_f = self._run_simplex(previous_x, delta)

            max_change = float(np.max(np.abs(previous_x - current_x)))
            if self._debug:
                print(
                    f"[amoeba] restart {restarts}: value={self._external(current_f):.6g} "
                    f"max parameter change={max_change:.3g}"
                )
            if (
                self._within_fractional_tolerance(previous_f, current_f)
                and max_change < self._parameters_convergence_tolerance
            ):
                return restarts

    def _describe(self, state: OptimizerState) -> str:
        if state is OptimizerState.CONVERGED:
            text = (
                f"Converged: simplex diameter <= {self._parameters_convergence_tolerance:g} "
                f"and fractional value spread <= {self._fractional_tolerance:g}"
            )
            if self._restarts:
                text += f" ({self._restarts} restarts)"
        elif state is OptimizerState.MAX_ITERATIONS_REACHED:
            text = (
                f"Maximum number of iterations ({self._maximum_number_of_iterations}) reached"
            )
        else:
            text = "Optimization cancelled"
        return f"FFTAmoebaOptimizer: {text} after {self._evaluations} evaluations"

    def start_optimization(self, initial_position: Optional[Sequence[float]] = None) -> OptimizationResult:
        """
        Run the search.

        Parameters
        ----------
        initial_position : sequence of float, optional
            Starting position; overrides `set_initial_position`.

        Returns
        -------
        result : OptimizationResult
            Best position and the reason the search stopped.
        """
        if initial_position is not None:
            self.set_initial_position(initial_position)
        x0 = self._validate_settings()
        delta = self._initial_delta(x0)

        self._cancel.clear()
        self._evaluations = 0
        self._restarts = 0
        self._budget = self._maximum_number_of_iterations
        self._best_position = None
        self._best_internal = np.inf
        self._state = OptimizerState.RUNNING
        self._stop_condition_description = "FFTAmoebaOptimizer: running"

        if self.show_progress:
            self._progress = tqdm(total=self._budget, desc="amoeba", leave=True)
        try:
            self._run_simplex(x0, delta)
            if self._optimize_with_restarts:
                self._restart(delta)
            state = OptimizerState.CONVERGED
        except _StopSearch as stop:
            state = stop.state
        finally:
            if self._progress is not None:
                self._progress.close()
                self._progress = None

        if self._best_position is None:
            # cancelled or out of budget before the first evaluation
            self._best_position = x0.copy()

        self._state = state
        self._stop_condition_description = self._describe(state)
        if self._debug:
            print(f"[amoeba] {self._stop_condition_description}")

        return OptimizationResult(
            parameters=self._best_position.copy(),
            value=self.value,
            state=state,
            stop_condition_description=self._stop_condition_description,
            number_of_evaluations=self._evaluations,
            number_of_restarts=self._restarts,
        )
