import numpy as np
import pytest

from montage_dewarp.optimization.amoeba import (
    FFTAmoebaOptimizer,
    OptimizerConfigurationError,
    OptimizerState,
)


class _Quadratic:
    """Shifted bowl with minimum `floor` at `center`; records every call."""

    def __init__(self, center, floor=10.0, sign=1.0):
        self.center = np.asarray(center, dtype=np.float64)
        self.floor = floor
        self.sign = sign
        self.points = []
        self.on_call = None

    @property
    def calls(self) -> int:
        return len(self.points)

    def get_number_of_parameters(self) -> int:
        return self.center.size

    def get_value(self, parameters) -> float:
        p = np.asarray(parameters, dtype=np.float64)
        self.points.append(p.copy())
        if self.on_call is not None:
            self.on_call(self.calls)
        return self.floor + self.sign * float(np.sum((p - self.center) ** 2))


def _make_optimizer(cost, **kwargs) -> FFTAmoebaOptimizer:
    opt = FFTAmoebaOptimizer(cost_function=cost, **kwargs)
    opt.set_initial_simplex_delta([0.5] * cost.get_number_of_parameters())
    return opt


def test_new_optimizer_is_idle():
    """Nothing has run yet."""
    opt = FFTAmoebaOptimizer()
    assert opt.state is OptimizerState.IDLE
    assert opt.current_position is None
    assert np.isnan(opt.value)
    assert opt.number_of_evaluations == 0
    assert "state=idle" in repr(opt)


def test_minimizes_quadratic():
    """Simplex search converges onto the bowl minimum."""
    cost = _Quadratic([1.0, -2.0])
    opt = _make_optimizer(
        cost,
        maximum_number_of_iterations=2000,
        fractional_tolerance=1e-8,
        parameters_convergence_tolerance=1e-6,
    )
    result = opt.start_optimization([0.0, 0.0])

    assert result.state is OptimizerState.CONVERGED
    assert np.allclose(result.parameters, [1.0, -2.0], atol=1e-4)
    assert np.isclose(result.value, 10.0, atol=1e-6)
    assert result.number_of_evaluations == cost.calls
    assert result.number_of_evaluations <= 2000
    assert opt.state is OptimizerState.CONVERGED
    assert "Converged" in opt.stop_condition_description


def test_maximize_finds_peak():
    """In maximize mode the search climbs to the top of an inverted bowl."""
    cost = _Quadratic([0.5, 0.25, -1.0], floor=5.0, sign=-1.0)
    opt = _make_optimizer(
        cost,
        maximum_number_of_iterations=3000,
        parameters_convergence_tolerance=1e-6,
        maximize=True,
    )
    result = opt.start_optimization(np.zeros(3))

    assert result.state is OptimizerState.CONVERGED
    assert np.allclose(result.parameters, [0.5, 0.25, -1.0], atol=1e-4)
    assert np.isclose(result.value, 5.0, atol=1e-6)
    assert result.value == max(cost.floor - np.sum((p - cost.center) ** 2) for p in cost.points)


@pytest.mark.parametrize("budget", [1, 4, 10, 25])
def test_evaluation_budget_is_respected(budget):
    """Without restarts the cost is evaluated at most `budget` times."""
    cost = _Quadratic([3.0, -1.0, 2.0])
    opt = _make_optimizer(cost, maximum_number_of_iterations=budget)
    result = opt.start_optimization(np.zeros(3))

    assert cost.calls <= budget
    assert result.number_of_evaluations == cost.calls
    assert result.state is OptimizerState.MAX_ITERATIONS_REACHED
    assert f"({budget})" in result.stop_condition_description


def test_budget_shared_with_restarts():
    """Restarts draw from the same evaluation budget."""
    cost = _Quadratic([1.0, -2.0])
    opt = _make_optimizer(
        cost,
        maximum_number_of_iterations=400,
        optimize_with_restarts=True,
        parameters_convergence_tolerance=1e-4,
    )
    result = opt.start_optimization([0.0, 0.0])

    assert cost.calls <= 400
    assert result.number_of_restarts >= 1
    assert result.state in (OptimizerState.CONVERGED, OptimizerState.MAX_ITERATIONS_REACHED)
    assert np.allclose(result.parameters, [1.0, -2.0], atol=1e-2)


def test_cancel_from_cost_function():
    """Cancelling mid-search stops before the next evaluation."""
    cost = _Quadratic([1.0, -2.0])
    opt = _make_optimizer(cost, maximum_number_of_iterations=1000)

    def cancel_at_five(call):
        if call == 5:
            opt.cancel()

    cost.on_call = cancel_at_five
    result = opt.start_optimization([0.0, 0.0])

    assert result.state is OptimizerState.CANCELLED
    assert cost.calls == 5
    assert result.number_of_evaluations == 5
    assert result.parameters is not None and result.parameters.shape == (2,)
    assert "cancelled" in result.stop_condition_description.lower()


def test_cancel_flag_cleared_on_restart():
    """A cancelled optimizer can be started again."""
    cost = _Quadratic([1.0])
    opt = _make_optimizer(cost, maximum_number_of_iterations=50)
    opt.cancel()
    first = opt.start_optimization([0.0])
    assert first.state is not OptimizerState.CANCELLED


def test_state_is_running_during_search():
    """The cost function observes the running state."""
    cost = _Quadratic([1.0])
    opt = _make_optimizer(cost, maximum_number_of_iterations=20)
    seen = []
    cost.on_call = lambda call: seen.append(opt.state)
    opt.start_optimization([0.0])
    assert seen and all(s is OptimizerState.RUNNING for s in seen)


def test_automatic_simplex_offsets():
    """Automatic simplex moves each axis by 5%, or a fixed step at zero."""
    cost = _Quadratic([1.0, 1.0])
    opt = FFTAmoebaOptimizer(cost_function=cost, maximum_number_of_iterations=3)
    opt.start_optimization([2.0, 0.0])

    assert np.allclose(cost.points[0], [2.0, 0.0])
    assert np.allclose(cost.points[1], [2.1, 0.0])
    assert np.allclose(cost.points[2], [2.0, FFTAmoebaOptimizer.ZERO_TERM_DELTA])


def test_manual_simplex_offsets():
    """Manual deltas are added one axis per corner."""
    cost = _Quadratic([1.0, 1.0])
    opt = FFTAmoebaOptimizer(cost_function=cost, maximum_number_of_iterations=3)
    opt.set_initial_simplex_delta([0.3, -0.2])
    opt.start_optimization([1.0, 1.0])
    assert np.allclose(cost.points[1], [1.3, 1.0])
    assert np.allclose(cost.points[2], [1.0, 0.8])


def test_set_initial_simplex_delta_disables_automatic():
    """Setting deltas switches to the manual simplex unless asked not to."""
    opt = FFTAmoebaOptimizer()
    assert opt.automatic_initial_simplex
    opt.set_initial_simplex_delta([1.0, 1.0])
    assert not opt.automatic_initial_simplex
    opt.set_initial_simplex_delta([1.0, 1.0], automatic_initial_simplex=True)
    assert opt.automatic_initial_simplex
    assert np.allclose(opt.initial_simplex_delta, [1.0, 1.0])


def test_configuration_errors_before_any_evaluation():
    """Invalid settings are reported without calling the cost function."""
    with pytest.raises(OptimizerConfigurationError):
        FFTAmoebaOptimizer().start_optimization([0.0])

    cost = _Quadratic([0.0, 0.0])
    opt = FFTAmoebaOptimizer(cost_function=cost)
    with pytest.raises(OptimizerConfigurationError):
        opt.start_optimization()
    with pytest.raises(OptimizerConfigurationError):
        opt.start_optimization([0.0, 0.0, 0.0])

    opt.set_initial_simplex_delta([0.5, 0.0])
    with pytest.raises(OptimizerConfigurationError):
        opt.start_optimization([1.0, 1.0])

    opt.set_initial_simplex_delta([0.5])
    with pytest.raises(OptimizerConfigurationError):
        opt.start_optimization([1.0, 1.0])

    opt.set_initial_simplex_delta([0.5, 0.5])
    opt.maximum_number_of_iterations = 0
    with pytest.raises(OptimizerConfigurationError):
        opt.start_optimization([1.0, 1.0])

    opt.maximum_number_of_iterations = 10
    opt.fractional_tolerance = 0.0
    with pytest.raises(ValueError):
        opt.start_optimization([1.0, 1.0])

    opt.fractional_tolerance = 1e-4
    with pytest.raises(OptimizerConfigurationError):
        opt.start_optimization([np.nan, 1.0])

    assert cost.calls == 0
    assert opt.state is OptimizerState.IDLE


def test_manual_simplex_without_delta_rejected():
    """Manual mode needs deltas."""
    cost = _Quadratic([0.0])
    opt = FFTAmoebaOptimizer(cost_function=cost, automatic_initial_simplex=False)
    with pytest.raises(OptimizerConfigurationError):
        opt.start_optimization([1.0])


def test_nan_cost_treated_as_worst():
    """NaN values never become the best position."""

    class _NanAway:
        def get_number_of_parameters(self):
            return 1

        def get_value(self, p):
            return float("nan") if p[0] > 0.5 else float((p[0] - 0.2) ** 2)

    opt = FFTAmoebaOptimizer(cost_function=_NanAway(), maximum_number_of_iterations=200)
    opt.set_initial_simplex_delta([0.4])
    result = opt.start_optimization([0.0])
    assert np.isfinite(result.value)
    assert result.parameters[0] <= 0.5


def test_debug_prints_amoeba_tag(capsys):
    """Debug mode reports simplex steps."""
    cost = _Quadratic([1.0])
    opt = _make_optimizer(cost, maximum_number_of_iterations=10, debug=True)
    opt.start_optimization([0.0])
    assert "[amoeba]" in capsys.readouterr().out
