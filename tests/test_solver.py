import numpy as np
import pytest

from DiskAtlas.errors import InsufficientPoints, SolverFailure
from DiskAtlas.solver import (
    theta_sim,
    hyper_renorm_conic,
    weighted_kmeans,
    distance_to_ellipse,
    NumericSolver,
)

from conftest import conic_from_params, ellipse_points


def same_conic(c1, c2, abs=1e-6):
    c1 = c1 / np.linalg.norm(c1)
    c2 = c2 / np.linalg.norm(c2)
    if np.dot(c1, c2) < 0:
        c2 = -c2
    return np.allclose(c1, c2, atol=abs)


def test_theta_sim():
    theta = np.array([1., 2., -3.])
    assert theta_sim(theta, theta) == pytest.approx(0.)
    assert theta_sim(theta, -theta) == pytest.approx(0.)
    assert theta_sim(theta, 2*theta) == pytest.approx(0.)
    assert theta_sim(np.array([1., 0.]), np.array([0., 2.])) \
        == pytest.approx(np.pi)


def test_hyper_renorm_conic_noiseless_ellipse():
    params = (1.5, -0.5, 6., 3., 0.4)
    xy = ellipse_points(*params, n=40)
    conic = hyper_renorm_conic(xy, np.ones(40), f0=5.)
    assert np.linalg.norm(conic) == pytest.approx(1.)
    assert same_conic(conic, conic_from_params(*params))


def test_hyper_renorm_conic_noisy_circle(rng):
    xy = ellipse_points(0., 0., 8., 8., 0., n=200)
    xy += rng.normal(0, 0.05, xy.shape)
    A, B, C, D, E, F = hyper_renorm_conic(xy, None, f0=8.)
    # x^2 + y^2 - r^2 = 0
    assert B / A == pytest.approx(0, abs=0.01)
    assert C / A == pytest.approx(1, abs=0.01)
    assert np.sqrt(-F / A) == pytest.approx(8., abs=0.05)


def test_hyper_renorm_conic_needs_five_points():
    with pytest.raises(InsufficientPoints):
        hyper_renorm_conic(np.zeros((4, 2)), f0=1.)


def test_hyper_renorm_conic_rejects_bad_weights():
    xy = ellipse_points(0., 0., 4., 2., 0., n=10)
    with pytest.raises(SolverFailure):
        hyper_renorm_conic(xy, np.zeros(10), f0=3.)


def test_weighted_kmeans_centers():
    data = np.array([0., 1., 10., 11.])
    centers, labels = weighted_kmeans(data, np.array([1., 3., 1., 1.]), 2)
    centers = np.sort(centers[:, 0])
    assert centers == pytest.approx([0.75, 10.5])
    assert labels[0] == labels[1]
    assert labels[2] == labels[3]
    assert labels[0] != labels[2]


def test_weighted_kmeans_too_few_points():
    with pytest.raises(SolverFailure):
        weighted_kmeans(np.array([1., 2.]), None, 3)


def test_distance_to_circle():
    xy = np.array([[8., 0.], [0., 2.], [3., 4.], [-10., 0.]])
    dists = distance_to_ellipse(xy, [0, 0, 5, 5, 0])
    assert dists == pytest.approx([3., 3., 0., 5.], abs=1e-5)
    signed = distance_to_ellipse(xy, [0, 0, 5, 5, 0], signed=True)
    assert signed[1] == pytest.approx(-3., abs=1e-5)


def test_distance_to_ellipse_special_points():
    params = [0, 0, 4, 2, 0]
    xy = np.array([[6., 0.], [0., 5.], [0., 0.]])
    dists = distance_to_ellipse(xy, params, signed=True)
    assert dists == pytest.approx([2., 3., -2.], abs=1e-5)


def test_distance_to_ellipse_matches_dense_sampling():
    params = [2., -1., 5., 2.5, 0.7]
    curve = ellipse_points(*params, n=100000)
    xy = np.array([[4., 3.], [2.5, -1.2], [-6., 0.], [9., 9.]])
    dists = distance_to_ellipse(xy, params, accuracy=1e-8)
    brute = np.min(
        np.linalg.norm(curve[None, :, :] - xy[:, None, :], axis=-1), axis=1
    )
    assert dists == pytest.approx(brute, abs=1e-3)


def test_distance_to_ellipse_swapped_axes():
    xy = np.array([[0., 7.], [1., 1.]])
    d1 = distance_to_ellipse(xy, [0, 0, 2, 5, 0])
    d2 = distance_to_ellipse(xy, [0, 0, 5, 2, np.pi/2])
    assert d1 == pytest.approx(d2, abs=1e-6)


def test_numeric_solver_methods():
    solver = NumericSolver()
    xy = ellipse_points(0., 0., 4., 2., 0.3, n=20)
    conic = solver.fit_conic(xy, np.ones(20), 3.)
    assert same_conic(conic, conic_from_params(0., 0., 4., 2., 0.3))
    centers, labels = solver.weighted_kmeans(np.array([0., 0., 5.]), None, 2)
    assert centers.shape == (2, 1)
    assert solver.distance_to_ellipse(xy, [0, 0, 4, 2, 0.3]) \
        == pytest.approx(np.zeros(20), abs=1e-5)
