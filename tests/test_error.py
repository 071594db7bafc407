"""Tests for reference-solution error estimation."""

import logging

import numpy as np
import pytest

from hpFEM.datastructures import ErrorCombination
from hpFEM.error import calc_err_est, calc_err_exact, element_errors
from hpFEM.mesh import line_mesh
from hpFEM.solution import Solution
from hpFEM.space import Space, construct_refined_spaces


def coarse_and_reference(func, n_elem=2, p=2):
    space = Space(line_mesh(1.0, n_elem), p_init=p)
    (ref_space,) = construct_refined_spaces([space])
    return space, Solution.from_function(ref_space, func)


class TestErrorEstimate:
    """calc_err_est on solutions with known errors."""

    def test_identical_solutions_give_zero(self):
        space = Space(line_mesh(1.0, 3), p_init=2)
        sln = Solution.from_function(space, lambda x: np.sin(3 * x[:, 0]))
        est = calc_err_est([sln], [sln])
        assert est.total == 0.0
        assert np.all(est.element_errors[0] == 0.0)

    def test_zero_coarse_solution_is_fully_wrong(self):
        space, ref = coarse_and_reference(lambda x: x[:, 0])
        est = calc_err_est([Solution.zero(space)], [ref])
        assert np.isclose(est.total, 100.0)
        assert np.isclose(est.element_errors[0].sum(), 1.0)
        assert list(est.element_ids[0]) == space.mesh.active_ids()

    def test_representable_reference(self):
        space, ref = coarse_and_reference(lambda x: x[:, 0] ** 2)
        sln = Solution.from_function(space, lambda x: x[:, 0] ** 2)
        assert calc_err_est([sln], [ref]).total < 1e-10

    def test_element_errors_localised(self):
        """Only the element where the solutions differ carries error."""
        space, ref = coarse_and_reference(lambda x: np.maximum(x[:, 0] - 0.5, 0.0) ** 2, p=2)
        sln = Solution.zero(space)
        ids, err_sq, norm_sq = element_errors(sln, ref)
        assert err_sq[0] < 1e-20
        assert err_sq[1] > 0.0
        assert np.isclose(err_sq.sum(), norm_sq)

    def test_combinations(self):
        space, ref_a = coarse_and_reference(lambda x: x[:, 0])
        _, ref_b = coarse_and_reference(lambda x: 2.0 * x[:, 0])
        zeros = [Solution.zero(space), Solution.zero(space)]
        euclid = calc_err_est(zeros, [ref_a, ref_b], ErrorCombination.EUCLIDEAN)
        energy = calc_err_est(zeros, [ref_a, ref_b], ErrorCombination.ENERGY)
        assert np.isclose(euclid.total, 100.0 * np.sqrt(2.0))
        assert np.isclose(energy.total, 100.0)
        assert np.allclose(euclid.rel_errors_percent, [100.0, 100.0])

    def test_zero_norm_component(self, caplog):
        space, ref_a = coarse_and_reference(lambda x: np.zeros(len(x)))
        _, ref_b = coarse_and_reference(lambda x: x[:, 0])
        with caplog.at_level(logging.WARNING, logger="hpFEM.error"):
            est = calc_err_est([Solution.zero(space), Solution.zero(space)], [ref_a, ref_b])
        assert "zero norm" in caplog.text
        assert est.rel_errors[0] == 0.0
        assert np.all(est.element_errors[0] == 0.0)
        assert np.isclose(est.total, 100.0)

    def test_pooled(self):
        space, ref = coarse_and_reference(lambda x: x[:, 0], n_elem=3)
        est = calc_err_est([Solution.zero(space)] * 2, [ref, ref])
        comps, ids, errors = est.pooled()
        assert list(comps) == [0, 0, 0, 1, 1, 1]
        assert len(ids) == len(errors) == 6

    def test_mismatched_lengths(self):
        space, ref = coarse_and_reference(lambda x: x[:, 0])
        with pytest.raises(ValueError):
            calc_err_est([Solution.zero(space)], [ref, ref])


class TestExactError:
    """calc_err_exact against analytic solutions."""

    def test_representable(self):
        space = Space(line_mesh(1.0, 2), p_init=2)
        sln = Solution.from_function(space, lambda x: x[:, 0] ** 2)
        err = calc_err_exact(sln, lambda x: x[:, 0] ** 2, lambda x: 2.0 * x)
        assert err < 1e-8

    def test_zero_solution(self):
        sln = Solution.zero(Space(line_mesh(1.0, 2), p_init=1))
        assert np.isclose(calc_err_exact(sln, lambda x: x[:, 0]), 100.0)
