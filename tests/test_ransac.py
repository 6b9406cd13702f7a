"""
Test cases for the RANSAC line-fitting heuristic in gentrace.extras.
"""

import jax.numpy as jnp
import jax.random as jrand
import pytest

from gentrace import DimensionMismatch, InvalidParameter
from gentrace.extras import RANSACParams, fit_line, fit_line_with


@pytest.fixture
def line_data():
    xs = jnp.linspace(-5.0, 5.0, 11)
    ys = -1.0 * xs + 2.0
    return xs, ys


@pytest.mark.unit
@pytest.mark.fast
def test_exact_line(base_key, line_data, standard_tolerance):
    xs, ys = line_data
    slope, intercept = fit_line(base_key, xs, ys)
    assert abs(float(slope) + 1.0) < standard_tolerance
    assert abs(float(intercept) - 2.0) < standard_tolerance


@pytest.mark.unit
@pytest.mark.fast
def test_ignores_outliers(base_key, line_data, standard_tolerance):
    xs, ys = line_data
    ys = ys.at[3].add(20.0).at[8].add(-15.0)
    slope, intercept = fit_line(base_key, xs, ys, iters=50, eps=0.5)
    assert abs(float(slope) + 1.0) < standard_tolerance
    assert abs(float(intercept) - 2.0) < standard_tolerance


@pytest.mark.unit
@pytest.mark.fast
def test_deterministic_for_fixed_key(line_data):
    xs, ys = line_data
    ys = ys + jnp.sin(xs)
    first = fit_line(jrand.key(3), xs, ys)
    second = fit_line(jrand.key(3), xs, ys)
    assert float(first[0]) == float(second[0])
    assert float(first[1]) == float(second[1])


@pytest.mark.unit
@pytest.mark.fast
def test_params_object(base_key, line_data):
    xs, ys = line_data
    params = RANSACParams(iters=20, subset_size=2, eps=0.1)
    assert fit_line_with(base_key, xs, ys, params) is not None
    slope, _ = fit_line_with(base_key, xs, ys, params)
    assert abs(float(slope) + 1.0) < 1e-6
    assert RANSACParams() == RANSACParams(iters=10, subset_size=3, eps=1.0)


@pytest.mark.unit
@pytest.mark.fast
@pytest.mark.parametrize(
    "kwargs",
    [
        {"subset_size": 1},
        {"iters": 0},
        {"subset_size": 12},
    ],
)
def test_invalid_settings(base_key, line_data, kwargs):
    xs, ys = line_data
    with pytest.raises(InvalidParameter):
        fit_line(base_key, xs, ys, **kwargs)


@pytest.mark.unit
@pytest.mark.fast
def test_mismatched_inputs(base_key, line_data):
    xs, ys = line_data
    with pytest.raises(DimensionMismatch):
        fit_line(base_key, xs, ys[:-1])
    with pytest.raises(DimensionMismatch):
        fit_line(base_key, xs[:, None], ys)
