"""Tests for the Abdo-Rackwitz and SQP nearest-point solvers."""

import logging

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
import optimistix as optx
import pytest

from nearest_point_jax import (
    SQP,
    AbdoRackwitz,
    DegenerateGradientError,
    LevelFunction,
    NearestPointProblem,
    NearestPointState,
    NumericalFailureError,
    SolverResult,
)

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)

W = jnp.array([1.0, 2.0, -3.0, 4.0])

SOLVERS = [AbdoRackwitz, SQP]


def hyperplane(u, args):
    return jnp.dot(W, u)


def ellipse(u, args):
    return u[0] ** 2 + 4.0 * u[1] ** 2


def parabola(u, args):
    return u[1] - 0.1 * u[0] ** 2


def _run_solver(solver, level_fn, y0, level_value, args=None):
    """Drive init/step/terminate by hand and return every state."""
    options = {"level_value": level_value}
    tags = frozenset()
    state = solver.init(level_fn, y0, args, options, None, None, tags)
    y = y0
    states = [state]
    for _ in range(solver.max_steps):
        done, _ = solver.terminate(level_fn, y, args, options, state, tags)
        if done:
            break
        y, state, _ = solver.step(level_fn, y, args, options, state, tags)
        states.append(state)
    return y, states


class TestSolverInitialization:
    """Tests for solver construction and state initialization."""

    def test_default_settings(self):
        solver = AbdoRackwitz()

        assert solver.tau == 0.5
        assert solver.omega == 1e-4
        assert solver.smooth == 1.2
        assert solver.max_steps == 100
        assert solver.atol == 1e-5
        assert solver.rtol == 1e-5
        assert solver.max_residual_error == 1e-5
        assert solver.max_constraint_error == 1e-5

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"tau": 0.0},
            {"tau": 1.0},
            {"omega": 1.5},
            {"smooth": 0.0},
            {"max_steps": -1},
            {"atol": -1e-3},
            {"max_constraint_error": -1.0},
        ],
    )
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            SQP(**kwargs)

    def test_init_state(self):
        solver = SQP()
        y0 = jnp.array([0.5, 1.0])
        state = solver.init(
            LevelFunction(ellipse), y0, None, {"level_value": 4.0}, None, None, frozenset()
        )

        assert isinstance(state, NearestPointState)
        assert int(state.step_count) == 0
        np.testing.assert_allclose(state.level, 4.25)
        np.testing.assert_allclose(state.level_value, 4.0)
        np.testing.assert_array_equal(state.old_point, [0.0, 0.0])
        np.testing.assert_allclose(state.hessian, [[2.0, 0.0], [0.0, 8.0]])
        assert float(state.sigma) == 0.0
        assert float(state.lam) == 0.0
        assert float(state.absolute_error) == -1.0
        assert int(state.status) == SolverResult.RUNNING

    def test_abdo_rackwitz_has_no_subproblem(self):
        state = AbdoRackwitz().init(
            LevelFunction(ellipse),
            jnp.array([0.5, 1.0]),
            None,
            {"level_value": 4.0},
            None,
            None,
            frozenset(),
        )

        assert state.hessian.shape == (0, 0)
        assert state.system_matrix.shape == (0, 0)


class TestHyperplane:
    """Linear level function G(u) = <w, u>, G0 = 2, from the origin."""

    expected = 2.0 * W / jnp.dot(W, W)

    def test_abdo_rackwitz_single_iteration(self):
        problem = NearestPointProblem(LevelFunction(hyperplane), level_value=2.0)
        result = AbdoRackwitz().run(problem, jnp.zeros(4))

        assert result.converged
        assert result.status == SolverResult.SUCCESS
        assert result.iteration_number == 1
        assert len(result) == 2
        np.testing.assert_allclose(result.optimal_point, self.expected, rtol=1e-10)
        np.testing.assert_allclose(result.optimal_value, 2.0, rtol=1e-10)
        assert result.residual_error_history[-1] < 1e-12

    def test_sqp(self):
        problem = NearestPointProblem(LevelFunction(hyperplane), level_value=2.0)
        result = SQP().run(problem, jnp.zeros(4))

        assert result.converged
        assert result.iteration_number <= 3
        np.testing.assert_allclose(result.optimal_point, self.expected, rtol=1e-10)

    def test_plain_callable(self):
        result = AbdoRackwitz().run(NearestPointProblem(hyperplane, 2.0), jnp.zeros(4))
        np.testing.assert_allclose(result.optimal_point, self.expected, rtol=1e-10)

    def test_integer_starting_point(self):
        result = AbdoRackwitz().run(
            NearestPointProblem(hyperplane, 2.0), jnp.zeros(4, dtype=jnp.int32)
        )
        np.testing.assert_allclose(result.optimal_point, self.expected, rtol=1e-10)

    def test_history(self):
        result = AbdoRackwitz().run(NearestPointProblem(hyperplane, 2.0), jnp.zeros(4))

        assert result.point_history.shape == (2, 4)
        np.testing.assert_array_equal(result.point_history[0], np.zeros(4))
        np.testing.assert_allclose(result.value_history, [0.0, 2.0], atol=1e-12)
        # The starting point carries the undefined marker
        assert result.absolute_error_history[0] == -1.0
        assert result.constraint_error_history[0] == -1.0


class TestDegenerateGradient:
    """A constant level function has no direction to follow."""

    @pytest.mark.parametrize("solver_cls", SOLVERS)
    def test_raises_with_partial_result(self, solver_cls):
        def constant(u, args):
            return 0.0 * jnp.sum(u) + 3.0

        problem = NearestPointProblem(LevelFunction(constant), level_value=0.0)
        with pytest.raises(DegenerateGradientError) as excinfo:
            solver_cls().run(problem, jnp.array([1.0, 1.0]))

        result = excinfo.value.result
        assert result.iteration_number == 1
        assert len(result) == 1
        assert result.status == SolverResult.DEGENERATE_GRADIENT
        np.testing.assert_array_equal(result.optimal_point, [1.0, 1.0])

    def test_step_reports_status(self):
        solver = AbdoRackwitz()
        level_fn = LevelFunction(lambda u, args: 0.0 * jnp.sum(u))
        _, states = _run_solver(solver, level_fn, jnp.array([1.0, 2.0]), 1.0)

        assert len(states) == 2
        assert int(states[-1].status) == SolverResult.DEGENERATE_GRADIENT
        np.testing.assert_array_equal(states[-1].point, [1.0, 2.0])


class TestIterationBudget:
    """Exhausting max_steps is not an error."""

    def test_zero_iterations(self, caplog):
        problem = NearestPointProblem(LevelFunction(ellipse), level_value=4.0)
        with caplog.at_level(logging.WARNING, logger="nearest_point_jax"):
            result = AbdoRackwitz(max_steps=0).run(problem, jnp.array([0.5, 1.0]))

        assert not result.converged
        assert result.status == SolverResult.MAX_ITERATIONS
        assert result.iteration_number == 0
        assert len(result) == 1
        np.testing.assert_array_equal(result.optimal_point, [0.5, 1.0])
        assert "failed to converge" in caplog.text

    @pytest.mark.parametrize("solver_cls", SOLVERS)
    def test_budget_respected(self, solver_cls):
        problem = NearestPointProblem(LevelFunction(parabola), level_value=3.0)
        result = solver_cls(max_steps=2, atol=0.0, rtol=0.0).run(
            problem, jnp.array([1.0, 1.0])
        )

        assert not result.converged
        assert result.iteration_number == 2
        assert len(result) == 3


class TestEllipse:
    """G(u) = u1² + 4 u2², G0 = 4: two nearest points (0, ±1)."""

    @pytest.mark.parametrize("solver_cls", SOLVERS)
    def test_converges_to_nearest_point(self, solver_cls):
        problem = NearestPointProblem(LevelFunction(ellipse), level_value=4.0)
        result = solver_cls().run(problem, jnp.array([0.5, 1.0]))

        assert result.converged
        assert result.iteration_number < 50
        np.testing.assert_allclose(result.optimal_point, [0.0, 1.0], atol=1e-3)
        np.testing.assert_allclose(result.optimal_value, 4.0, atol=1e-4)

    @pytest.mark.parametrize("solver_cls", SOLVERS)
    def test_symmetric_start(self, solver_cls):
        problem = NearestPointProblem(LevelFunction(ellipse), level_value=4.0)
        upper = solver_cls().run(problem, jnp.array([0.5, 1.0]))
        lower = solver_cls().run(problem, jnp.array([0.5, -1.0]))

        np.testing.assert_allclose(lower.optimal_point, [0.0, -1.0], atol=1e-3)
        np.testing.assert_allclose(
            lower.optimal_point, upper.optimal_point * np.array([1.0, -1.0]), atol=1e-12
        )

    def test_user_derivatives(self):
        level = LevelFunction(
            ellipse,
            grad_fn=lambda u, args: jnp.array([2.0 * u[0], 8.0 * u[1]]),
            hessian_fn=lambda u, args: jnp.diag(jnp.array([2.0, 8.0])),
        )
        problem = NearestPointProblem(level, level_value=4.0)
        result = SQP().run(problem, jnp.array([0.5, 1.0]))
        reference = SQP().run(
            NearestPointProblem(LevelFunction(ellipse), level_value=4.0),
            jnp.array([0.5, 1.0]),
        )

        np.testing.assert_allclose(result.optimal_point, reference.optimal_point, atol=1e-12)
        assert result.iteration_number == reference.iteration_number

    @pytest.mark.parametrize("solver_cls", SOLVERS)
    def test_penalty_parameter_non_decreasing(self, solver_cls):
        _, states = _run_solver(
            solver_cls(), LevelFunction(ellipse), jnp.array([0.5, 1.0]), 4.0
        )
        sigmas = np.array([float(s.sigma) for s in states])

        assert len(sigmas) > 2
        assert np.all(np.diff(sigmas) >= 1.0 - 1e-12)

    def test_old_point_tracks_previous_iterate(self):
        _, states = _run_solver(
            AbdoRackwitz(), LevelFunction(ellipse), jnp.array([0.5, 1.0]), 4.0
        )

        for previous, current in zip(states[:-1], states[1:]):
            np.testing.assert_array_equal(current.old_point, previous.point)
            np.testing.assert_array_equal(current.old_level, previous.level)

    def test_step_is_jittable(self):
        solver = SQP()
        level_fn = LevelFunction(ellipse)
        options = {"level_value": 4.0}
        y0 = jnp.array([0.5, 1.0])
        state = solver.init(level_fn, y0, None, options, None, None, frozenset())

        @jax.jit
        def jit_step(y, state):
            return solver.step(level_fn, y, None, options, state, frozenset())

        y_jit, state_jit, _ = jit_step(y0, state)
        y_eager, state_eager, _ = solver.step(
            level_fn, y0, None, options, state, frozenset()
        )

        np.testing.assert_allclose(y_jit, y_eager, rtol=1e-12)
        np.testing.assert_allclose(state_jit.lam, state_eager.lam, rtol=1e-12)


class TestSolverAgreement:
    """Both solvers find the same nearest point."""

    @pytest.mark.parametrize(
        "level, level_value, y0",
        [
            (hyperplane, 2.0, [0.1, 0.1, 0.1, 0.1]),
            (ellipse, 4.0, [0.5, 1.0]),
            (ellipse, 4.0, [-0.3, 0.8]),
        ],
    )
    def test_same_solution(self, level, level_value, y0):
        problem = NearestPointProblem(LevelFunction(level), level_value=level_value)
        ar = AbdoRackwitz().run(problem, jnp.array(y0))
        sqp = SQP().run(problem, jnp.array(y0))

        assert ar.converged and sqp.converged
        np.testing.assert_allclose(ar.optimal_point, sqp.optimal_point, atol=1e-4)


class TestNumericalFailure:
    """A singular KKT system ends the SQP run."""

    def test_singular_kkt_system(self):
        # λ H cancels the 2I block along u1 once λ = -1
        level = LevelFunction(
            lambda u, args: u[0] ** 2 + u[1],
            hessian_fn=lambda u, args: jnp.array([[2.0, 0.0], [0.0, 0.0]]),
        )
        solver = SQP()
        options = {"level_value": 0.0}
        y0 = jnp.array([0.0, 1.0])
        state = solver.init(level, y0, None, options, None, None, frozenset())
        state = eqx.tree_at(lambda s: s.lam, state, jnp.array(-1.0))
        _, new_state, _ = solver.step(level, y0, None, options, state, frozenset())

        assert int(new_state.status) == SolverResult.NUMERICAL_FAILURE
        np.testing.assert_array_equal(new_state.point, y0)
        assert int(new_state.step_count) == 1

    def test_run_raises_with_partial_result(self):
        level = LevelFunction(
            ellipse, hessian_fn=lambda u, args: jnp.full((2, 2), jnp.nan)
        )
        problem = NearestPointProblem(level, level_value=4.0)
        with pytest.raises(NumericalFailureError) as excinfo:
            SQP().run(problem, jnp.array([0.5, 1.0]))

        result = excinfo.value.result
        assert result.status == SolverResult.NUMERICAL_FAILURE
        assert result.iteration_number == 1
        np.testing.assert_array_equal(result.optimal_point, [0.5, 1.0])


class TestAntiCycling:
    """G(u) = u2 - 0.1 u1², G0 = 3 from (1, 1).

    The level set bends away from the origin, so Abdo-Rackwitz iterates
    alternate in sign along u1: (1, 1) -> (-0.558, 2.789) -> (0.327, 2.932).
    On the third iteration the trial (-0.195, 2.977) is more aligned with
    the previous iterate than with the current one and is replaced by the
    secant point β (u_old + u) / ‖u_old + u‖ ≈ (-0.121, 2.999).
    """

    def test_correction_applied_during_run(self):
        _, states = _run_solver(
            AbdoRackwitz(), LevelFunction(parabola), jnp.array([1.0, 1.0]), 3.0
        )
        corrected = [bool(s.corrected) for s in states]

        assert corrected[:3] == [False, False, False]
        assert corrected[3]
        np.testing.assert_allclose(states[3].point, [-0.121, 2.999], atol=5e-3)
        # The correction interpolates onto the level set
        np.testing.assert_allclose(states[3].level, 3.0, atol=5e-3)

    def test_converges_with_correction(self):
        _, states = _run_solver(
            AbdoRackwitz(), LevelFunction(parabola), jnp.array([1.0, 1.0]), 3.0
        )
        final = states[-1]

        assert any(bool(s.corrected) for s in states)
        assert bool(final.converged)
        assert int(final.step_count) < 50
        np.testing.assert_allclose(final.point, [0.0, 3.0], atol=1e-3)

    def test_run(self):
        problem = NearestPointProblem(LevelFunction(parabola), level_value=3.0)
        result = AbdoRackwitz().run(problem, jnp.array([1.0, 1.0]))

        assert result.converged
        assert result.iteration_number < 50
        np.testing.assert_allclose(result.optimal_point, [0.0, 3.0], atol=1e-3)


class TestCyclingFailure:
    """The anti-cycling interpolation is undefined when G_old == G.

    On G(u) = u1 + u2, G0 = 2, the iterate u = (-1, 2) and the previous
    iterate u_old = (0.6, 0.4) both have G = 1. The Abdo-Rackwitz trial
    (1, 1) is accepted by the line search and lies much closer to u_old
    than to u, so the correction is required but has a zero denominator.
    """

    level = LevelFunction(lambda u, args: u[0] + u[1])
    options = {"level_value": 2.0}

    def _swinging_state(self, solver):
        state = solver.init(
            self.level,
            jnp.array([-1.0, 2.0]),
            None,
            self.options,
            None,
            None,
            frozenset(),
        )
        return eqx.tree_at(lambda s: s.old_point, state, jnp.array([0.6, 0.4]))

    def test_step_reports_status(self):
        solver = AbdoRackwitz()
        state = self._swinging_state(solver)
        np.testing.assert_array_equal(state.old_level, state.level)

        y, new_state, _ = solver.step(
            self.level, state.point, None, self.options, state, frozenset()
        )

        assert int(new_state.status) == SolverResult.NUMERICAL_FAILURE
        assert int(new_state.step_count) == 1
        np.testing.assert_array_equal(y, [-1.0, 2.0])
        np.testing.assert_array_equal(new_state.point, [-1.0, 2.0])
        np.testing.assert_array_equal(new_state.old_point, [0.6, 0.4])
        assert np.all(np.isfinite(new_state.point))

    def test_run_raises_with_partial_result(self):
        solver = AbdoRackwitz()
        problem = NearestPointProblem(self.level, level_value=2.0)

        with pytest.raises(NumericalFailureError) as excinfo:
            solver.run(problem, state=self._swinging_state(solver))

        result = excinfo.value.result
        assert result.status == SolverResult.NUMERICAL_FAILURE
        assert result.iteration_number == 1
        assert len(result) == 1
        np.testing.assert_array_equal(result.optimal_point, [-1.0, 2.0])


class TestRepeatedRuns:
    """The jitted step is compiled once and reused across runs."""

    def test_second_run_does_not_retrace(self):
        calls = []

        def counted(u, args):
            calls.append(None)
            return jnp.dot(W, u)

        solver = AbdoRackwitz()
        problem = NearestPointProblem(LevelFunction(counted), level_value=2.0)

        first = solver.run(problem, jnp.zeros(4))
        n_calls = len(calls)
        second = solver.run(problem, jnp.zeros(4))

        # Only the eager evaluation at the starting point in init
        assert len(calls) - n_calls == 1
        np.testing.assert_array_equal(second.optimal_point, first.optimal_point)

    def test_requires_starting_point_or_state(self):
        problem = NearestPointProblem(LevelFunction(hyperplane), level_value=2.0)
        with pytest.raises(ValueError, match="starting point or a state"):
            AbdoRackwitz().run(problem)


class TestVerbose:
    """Verbose runs log every iterate."""

    def test_iterations_logged(self, caplog):
        problem = NearestPointProblem(LevelFunction(hyperplane), level_value=2.0)
        with caplog.at_level(logging.INFO, logger="nearest_point_jax"):
            AbdoRackwitz(verbose=True).run(problem, jnp.zeros(4))

        assert "iteration=1" in caplog.text

    def test_quiet_by_default(self, caplog):
        problem = NearestPointProblem(LevelFunction(hyperplane), level_value=2.0)
        with caplog.at_level(logging.INFO, logger="nearest_point_jax"):
            AbdoRackwitz().run(problem, jnp.zeros(4))

        assert "iteration=" not in caplog.text


class TestOptimistixInterface:
    """The solvers plug into optx.minimise."""

    @pytest.mark.parametrize("solver_cls", SOLVERS)
    def test_minimise(self, solver_cls):
        solution = optx.minimise(
            ellipse,
            solver_cls(),
            jnp.array([0.5, 1.0]),
            options={"level_value": 4.0},
            max_steps=100,
        )

        np.testing.assert_allclose(solution.value, [0.0, 1.0], atol=1e-3)
        assert int(solution.stats["num_steps"]) < 50
