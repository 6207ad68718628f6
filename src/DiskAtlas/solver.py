"""In-process implementation of the numeric capabilities used by the ellipse
estimator: weighted hyper-renormalization conic fitting, weighted k-means
clustering and point-to-ellipse distances.

Any object with the same three methods as NumericSolver can be passed to the
ellipse estimator in its place.

The hyper-renormalization follows: Kanatani, K., Al-Sharadqah, A.,
Chernov, N. & Sugaya, Y. Renormalization returns: hyper-renormalization and
its applications. ECCV 2012, 384-397.
"""

import warnings

import numpy as np
from numpy.linalg import norm, eigh, LinAlgError

from scipy.linalg import eig

from sklearn.cluster import KMeans
from sklearn.exceptions import ConvergenceWarning

from DiskAtlas.errors import SolverFailure, InsufficientPoints

# %%


def theta_sim(theta1, theta2):
    """Similarity measure between 2 parameter vectors of arbitrary length.

    The angle, in radians, between the vectors (ignoring their sign) times
    the ratio of the larger to the smaller amplitude.

    Parameters
    ----------
    theta1, theta2 : 1D arrays
        The vectors.

    Returns
    -------
    sim : scalar
        0 for parallel vectors of the same amplitude.

    """

    amp1 = norm(theta1)
    amp2 = norm(theta2)
    u1 = theta1 / amp1
    u2 = theta2 / amp2
    if np.dot(u1, u2) < 0:
        u2 = -u2
    angle = 2 * np.arctan2(norm(u1 - u2), norm(u1 + u2))

    return angle * max(amp1/amp2, amp2/amp1)


def _conic_vectors(xy, f0):
    """Data vectors xi and their normalized covariance matrices V0[xi]."""

    x, y = xy[:, 0], xy[:, 1]
    n = xy.shape[0]

    xi = np.stack([
        x*x,
        2*x*y,
        y*y,
        2*f0*x,
        2*f0*y,
        np.full(n, f0*f0),
    ], axis=1)

    V0 = np.zeros((n, 6, 6))
    V0[:, 0, 0] = x*x
    V0[:, 0, 1] = V0[:, 1, 0] = x*y
    V0[:, 0, 3] = V0[:, 3, 0] = f0*x
    V0[:, 1, 1] = x*x + y*y
    V0[:, 1, 2] = V0[:, 2, 1] = x*y
    V0[:, 1, 3] = V0[:, 3, 1] = f0*y
    V0[:, 1, 4] = V0[:, 4, 1] = f0*x
    V0[:, 2, 2] = y*y
    V0[:, 2, 4] = V0[:, 4, 2] = f0*y
    V0[:, 3, 3] = f0*f0
    V0[:, 4, 4] = f0*f0

    return xi, 4 * V0


def hyper_renorm_conic(xy, weights=None, f0=1., max_iter=100, thresh=1e-8):
    """Fit a conic to weighted points using hyper-renormalization.

    Fits A*x^2 + B*x*y + C*y^2 + D*x + E*y + F = 0, internally in the form
    t0*x^2 + 2*t1*x*y + t2*y^2 + 2*f0*(t3*x + t4*y) + f0^2*t5 = 0.

    Parameters
    ----------
    xy : array of shape (n, 2)
        The point coordinates. Best conditioned when centered near the conic.

    weights : array of shape (n,) or None
        Non-negative point weights, e.g. gradient amplitudes. If None, equal
        weights.
        Default: None

    f0 : scalar
        Approximate size of the conic. Arbitrary, but a value close to the
        size of the data reduces numerical errors.
        Default: 1.

    max_iter : int
        Maximum number of reweighting iterations. If reached, the last
        estimate is returned.
        Default: 100

    thresh : scalar
        Iterations stop when theta_sim of successive estimates is below this.
        Default: 1e-8

    Returns
    -------
    conic : array of shape (6,)
        The unit-norm coefficients [A, B, C, D, E, F].

    """

    xy = np.array(xy, dtype=float).reshape((-1, 2))
    n = xy.shape[0]
    if n < 5:
        raise InsufficientPoints(
            f'At least 5 points are needed to fit a conic, got {n}.'
        )

    if weights is None:
        weights = np.ones(n)
    weights = np.array(weights, dtype=float).flatten()
    if (weights.shape[0] != n or np.any(weights < 0)
            or not np.sum(weights) > 0):
        raise SolverFailure('Invalid weights for conic fitting.')
    omega = weights / np.sum(weights)

    xi, V0 = _conic_vectors(xy, f0)
    e = np.array([1., 0., 1., 0., 0., 0.])

    W = np.ones(n)
    theta_prev = None
    for iteration in range(max_iter + 1):
        Ww = omega * W

        M = np.einsum('n,ni,nj->ij', Ww, xi, xi)
        try:
            evals, evecs = eigh(M)
        except LinAlgError as err:
            raise SolverFailure(f'Eigen decomposition failed: {err}')
        if np.any(evals[1:] <= 0):
            raise SolverFailure('Degenerate point set for conic fitting.')

        # Pseudo-inverse of M truncated to rank 5
        M5 = (evecs[:, 1:] / evals[1:]) @ evecs[:, 1:].T

        xi_sum = Ww @ xi
        N = (np.einsum('n,nij->ij', Ww, V0)
             + np.outer(xi_sum, e) + np.outer(e, xi_sum))

        q = np.einsum('ni,ij,nj->n', xi, M5, xi)
        V0M5xi = np.einsum('nij,jk,nk->ni', V0, M5, xi)
        T = V0M5xi[:, :, None] * xi[:, None, :]
        N -= np.einsum(
            'n,nij->ij',
            Ww**2,
            q[:, None, None] * V0 + T + T.transpose(0, 2, 1),
        )

        # N theta = mu M theta for the largest |mu| <=> smallest |1/mu|
        try:
            lams, vecs = eig(M, N)
        except (LinAlgError, ValueError) as err:
            raise SolverFailure(f'Generalized eigenproblem failed: {err}')
        finite = np.isfinite(lams)
        if not np.any(finite):
            raise SolverFailure('No finite generalized eigenvalue.')
        ind = np.argmin(np.where(finite, np.abs(lams), np.inf))
        theta = np.real(vecs[:, ind])
        theta /= norm(theta)

        if theta_prev is not None and theta_sim(theta, theta_prev) < thresh:
            break
        if iteration == max_iter:
            break

        theta_prev = theta
        denom = np.einsum('i,nij,j->n', theta, V0, theta)
        W = 1 / np.maximum(denom, np.finfo(float).tiny)

    conic = np.array([
        theta[0],
        2*theta[1],
        theta[2],
        2*f0*theta[3],
        2*f0*theta[4],
        f0*f0*theta[5],
    ])
    if not np.all(np.isfinite(conic)) or norm(conic) == 0:
        raise SolverFailure('Conic fit returned invalid coefficients.')

    return conic / norm(conic)


def weighted_kmeans(data, weights=None, k=2, n_init=10, random_state=0):
    """Weighted k-means clustering.

    Parameters
    ----------
    data : array of shape (n,) or (n, d)
        The data. 1D data is treated as a single variable.

    weights : array of shape (n,) or None
        Sample weights. If None or all zero, unweighted.
        Default: None

    k : int
        Number of clusters.
        Default: 2

    n_init : int
        Number of k-means initializations.
        Default: 10

    random_state : int or None
        Seed for the initializations.
        Default: 0

    Returns
    -------
    centers : array of shape (k, d)
        The cluster centroids.

    labels : int array of shape (n,)
        The cluster of each data point.

    """

    data = np.array(data, dtype=float)
    if data.ndim == 1:
        data = data[:, None]
    if data.shape[0] < k:
        raise SolverFailure(
            f'Cannot form {k} clusters from {data.shape[0]} points.'
        )
    if weights is not None:
        weights = np.array(weights, dtype=float).flatten()
        if not np.sum(weights) > 0:
            weights = None

    kmeans = KMeans(n_clusters=k, n_init=n_init, random_state=random_state)
    with warnings.catch_warnings():
        # Fewer distinct values than clusters: duplicate centers are fine
        warnings.simplefilter('ignore', ConvergenceWarning)
        kmeans.fit(data, sample_weight=weights)

    return kmeans.cluster_centers_, kmeans.labels_


def distance_to_ellipse(
        xy,
        params,
        accuracy=1e-6,
        signed=False,
        max_iter=200,
):
    """Distances of points from an ellipse.

    Uses the robust bisection of D. Eberly, "Distance from a Point to an
    Ellipse, an Ellipsoid, or a Hyperellipsoid" (Geometric Tools).

    Parameters
    ----------
    xy : array of shape (n, 2)
        The [x, y] point coordinates.

    params : 5-list
        The ellipse [x0, y0, a, b, angle]: center, semi-axis along the
        rotated x axis, semi-axis along the rotated y axis and rotation angle
        in radians.

    accuracy : scalar
        Bisection stops when the distance uncertainty is below this.
        Default: 1e-6

    signed : bool
        If True, points inside the ellipse have negative distances.
        Default: False

    max_iter : int
        Maximum number of bisection steps.
        Default: 200

    Returns
    -------
    dists : array of shape (n,)
        The distances.

    """

    xy = np.array(xy, dtype=float).reshape((-1, 2))
    x0, y0, a, b, angle = [float(p) for p in params]
    if not (a > 0 and b > 0):
        raise SolverFailure(f'Invalid ellipse semi-axes: {a}, {b}.')

    d = xy - [x0, y0]
    u = d[:, 0]*np.cos(angle) + d[:, 1]*np.sin(angle)
    v = -d[:, 0]*np.sin(angle) + d[:, 1]*np.cos(angle)
    inside = (u/a)**2 + (v/b)**2 < 1

    # Work in the first quadrant with e0 >= e1
    if a >= b:
        e0, e1, p0, p1 = a, b, np.abs(u), np.abs(v)
    else:
        e0, e1, p0, p1 = b, a, np.abs(v), np.abs(u)

    z0 = p0 / e0
    z1 = p1 / e1
    g = z0**2 + z1**2 - 1
    r0 = (e0 / e1)**2
    n0 = r0 * z0

    s0 = z1 - 1
    s1 = np.where(g < 0, 0, np.hypot(n0, z1) - 1)
    for _ in range(max_iter):
        s = (s0 + s1) / 2
        gs = (n0 / (s + r0))**2 + (z1 / (s + 1))**2 - 1
        s0 = np.where(gs >= 0, s, s0)
        s1 = np.where(gs <= 0, s, s1)
        if np.max(s1 - s0, initial=0) * e0 <= accuracy:
            break
    s = (s0 + s1) / 2

    q0 = r0 * p0 / (s + r0)
    q1 = p1 / (s + 1)
    dists = np.hypot(q0 - p0, q1 - p1)

    # Points on the axes
    on_minor = (p0 == 0) & (p1 > 0)
    dists[on_minor] = np.abs(p1[on_minor] - e1)

    on_major = p1 == 0
    if np.any(on_major):
        lim = (e0**2 - e1**2) / e0
        pm = p0[on_major]
        with np.errstate(invalid='ignore', divide='ignore'):
            q0m = e0**2 * pm / (e0**2 - e1**2)
            q1m = e1 * np.sqrt(np.clip(1 - (q0m / e0)**2, 0, None))
            dists[on_major] = np.where(
                pm < lim,
                np.hypot(q0m - pm, q1m),
                np.abs(pm - e0),
            )

    if signed:
        dists = np.where(inside, -dists, dists)

    return dists


class NumericSolver:
    """Numeric capabilities used by the ellipse estimator.

    Parameters
    ----------
    n_init : int
        Number of k-means initializations.
        Default: 10

    random_state : int or None
        Seed for k-means initializations.
        Default: 0

    """

    def __init__(self, n_init=10, random_state=0):
        self.n_init = n_init
        self.random_state = random_state

    def fit_conic(self, xy, weights, f0, max_iter=100, thresh=1e-8):
        """Weighted hyper-renormalization conic fit. See
        hyper_renorm_conic."""
        return hyper_renorm_conic(xy, weights, f0, max_iter, thresh)

    def weighted_kmeans(self, data, weights, k):
        """Weighted k-means. Returns (centers, labels)."""
        return weighted_kmeans(
            data, weights, k, self.n_init, self.random_state
        )

    def distance_to_ellipse(self, xy, params, accuracy=1e-6, signed=False):
        """Point to ellipse distances. See distance_to_ellipse."""
        return distance_to_ellipse(xy, params, accuracy, signed)
