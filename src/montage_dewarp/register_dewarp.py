"""
Estimate montage dewarp parameters.

Wires the FFT convolution cost function to the amoeba optimizer, runs the
search for the parameter vector that best aligns neighboring tiles, and
reads/writes the result as JSON.
"""

import json
from pathlib import Path
from typing import Optional, Sequence, Union

import numpy as np

from montage_dewarp.dataio.montage import DEFAULT_ARRAY_NAME, GridMontage
from montage_dewarp.imageprocessing.costfunction import FFTConvolutionCostFunction
from montage_dewarp.imageprocessing.dewarp import DewarpModel, PolynomialDewarpModel
from montage_dewarp.optimization.amoeba import (
    FFTAmoebaOptimizer,
    OptimizationResult,
    OptimizerState,
)


class DewarpRegistration:
    """
    Dewarp parameter search over one grid montage.

    Parameters
    ----------
    montage : GridMontage
        Montage to register.
    dewarp_model : DewarpModel, optional
        Coordinate model; `PolynomialDewarpModel` if omitted.
    array_name : str
        Intensity array used for registration.
    initial_parameters : sequence of float, optional
        Starting parameter vector; the zero vector if omitted.
    initial_simplex_delta : sequence of float, optional
        Per-parameter simplex edges. If omitted, the model's
        `suggested_simplex_delta` is used when it has one, otherwise
        the optimizer builds the simplex automatically.
    simplex_displacement : float
        Pixel displacement passed to `suggested_simplex_delta`.
    maximum_number_of_iterations : int
        Cost function evaluation budget.
    optimize_with_restarts : bool
        Restart the simplex after convergence.
    fractional_tolerance : float
        Function-value convergence tolerance.
    parameters_convergence_tolerance : float
        Simplex-diameter convergence tolerance.
    max_workers : int
        Worker threads for tile sampling and overlap scoring.
    show_progress : bool
        Show a progress bar over the evaluation budget.
    debug : bool
        If True, print progress from every component.
    """

    def __init__(
        self,
        montage: GridMontage,
        dewarp_model: Optional[DewarpModel] = None,
        array_name: str = DEFAULT_ARRAY_NAME,
        initial_parameters: Optional[Sequence[float]] = None,
        initial_simplex_delta: Optional[Sequence[float]] = None,
        simplex_displacement: float = 1.0,
        maximum_number_of_iterations: int = 500,
        optimize_with_restarts: bool = False,
        fractional_tolerance: float = 1e-4,
        parameters_convergence_tolerance: float = 1e-8,
        max_workers: int = 8,
        show_progress: bool = False,
        debug: bool = False,
    ):
        self.montage = montage
        self.dewarp_model = dewarp_model or PolynomialDewarpModel()
        self.array_name = array_name
        self._debug = bool(debug)

        self.cost_function = FFTConvolutionCostFunction(
            self.dewarp_model,
            max_workers=max_workers,
            debug=debug,
        )
        self.cost_function.initialize(montage, array_name)

        n = self.cost_function.get_number_of_parameters()
        if initial_parameters is None:
            initial_parameters = np.zeros(n, dtype=np.float64)

        self.optimizer = FFTAmoebaOptimizer(
            cost_function=self.cost_function,
            maximum_number_of_iterations=maximum_number_of_iterations,
            optimize_with_restarts=optimize_with_restarts,
            fractional_tolerance=fractional_tolerance,
            parameters_convergence_tolerance=parameters_convergence_tolerance,
            maximize=True,
            show_progress=show_progress,
            debug=debug,
        )
        self.optimizer.set_initial_position(initial_parameters)

        if initial_simplex_delta is None and hasattr(self.dewarp_model, "suggested_simplex_delta"):
            initial_simplex_delta = self.dewarp_model.suggested_simplex_delta(
                (self.cost_function.image_dim_x, self.cost_function.image_dim_y),
                displacement=simplex_displacement,
            )
        if initial_simplex_delta is not None:
            self.optimizer.set_initial_simplex_delta(initial_simplex_delta)

        self.result: Optional[OptimizationResult] = None

    def cancel(self) -> None:
        """
        Stop a running search at its next evaluation.
        """
        self.optimizer.cancel()

    def run(self) -> OptimizationResult:
        """
        Run the parameter search.

        Returns
        -------
        result : OptimizationResult
            Best parameter vector and stop reason.
        """
        self.result = self.optimizer.start_optimization()
        if self._debug:
            print(f"[dewarp] {self.result.stop_condition_description}")
            print(f"[dewarp] parameters: {np.array2string(self.result.parameters, precision=4)}")
        return self.result

    def save_result(self, filepath: Union[str, Path]) -> None:
        """
        Save the last result to a JSON file.

        Parameters
        ----------
        filepath : str or Path
            Output JSON path.
        """
        if self.result is None:
            raise RuntimeError("run() must be called before save_result().")
        save_dewarp_result(self.result, filepath)


def estimate_dewarp_parameters(
    montage: GridMontage,
    output_path: Optional[Union[str, Path]] = None,
    **kwargs,
) -> OptimizationResult:
    """
    Run a dewarp parameter search and optionally save the result.

    Parameters
    ----------
    montage : GridMontage
        Montage to register.
    output_path : str or Path, optional
        JSON file for the result.
    **kwargs
        Forwarded to `DewarpRegistration`.

    Returns
    -------
    result : OptimizationResult
    """
    registration = DewarpRegistration(montage, **kwargs)
    result = registration.run()
    if output_path is not None:
        registration.save_result(output_path)
    return result


def save_dewarp_result(result: OptimizationResult, filepath: Union[str, Path]) -> None:
    """
    Write an optimization result to JSON.
    """
    out = {
        "parameters": [float(p) for p in result.parameters],
        "value": float(result.value),
        "state": result.state.value,
        "stop_condition": result.stop_condition_description,
        "evaluations": int(result.number_of_evaluations),
        "restarts": int(result.number_of_restarts),
    }
    with open(Path(filepath), "w") as f:
        json.dump(out, f, indent=2)


def load_dewarp_result(filepath: Union[str, Path]) -> OptimizationResult:
    """
    Read an optimization result written by `save_dewarp_result`.
    """
    with open(Path(filepath), "r") as f:
        data = json.load(f)
    return OptimizationResult(
        parameters=np.asarray(data["parameters"], dtype=np.float64),
        value=float(data["value"]),
        state=OptimizerState(data["state"]),
        stop_condition_description=data["stop_condition"],
        number_of_evaluations=int(data["evaluations"]),
        number_of_restarts=int(data.get("restarts", 0)),
    )
