import numpy as np

from DiskAtlas.errors import (
    DiskAtlasError,
    InsufficientPoints,
    STATUS_OK,
    STATUS_NOT_ELLIPSE,
)
from DiskAtlas.image import (
    annular_mask,
    extract_masked_region,
    gradient_amplitude,
)
from DiskAtlas.solver import NumericSolver

# %%
"""Columns of the ellipse table"""
extrema_columns = [
    'top_x', 'top_y',
    'right_x', 'right_y',
    'bottom_x', 'bottom_y',
    'left_x', 'left_y',
]
ellipse_columns = [
    'image', 'spot', 'status', 'is_ellipse',
    'x0', 'y0', 'a', 'b', 'angle',
] + extrema_columns

# %%


class Ellipse:
    """An ellipse decomposed from a conic.

    Parameters
    ----------
    conic : array of shape (6,)
        The conic coefficients [A, B, C, D, E, F].

    is_ellipse : bool
        Whether the conic describes a real, non-degenerate ellipse. If False,
        the geometric attributes are NaN.

    center : array of shape (2,)
        The [x, y] center.

    a, b : scalars
        The semi-major and semi-minor axis lengths (a >= b).

    angle : scalar
        Direction of the semi-major axis in radians, in [0, pi), measured from
        +x towards +y in image coordinates.

    """

    def __init__(
            self,
            conic,
            is_ellipse=False,
            center=None,
            a=np.nan,
            b=np.nan,
            angle=np.nan,
    ):
        self.conic = np.array(conic, dtype=float)
        self.is_ellipse = bool(is_ellipse)
        if center is None:
            center = [np.nan, np.nan]
        self.center = np.array(center, dtype=float)
        self.a = float(a)
        self.b = float(b)
        self.angle = float(angle)

    @property
    def params(self):
        """[x0, y0, a, b, angle]"""
        return [self.center[0], self.center[1], self.a, self.b, self.angle]

    @property
    def extrema(self):
        """The ends of the axes as an array of shape (4, 2), ordered top,
        right, bottom, left in the frame of the ellipse: the minor axis end
        towards -y, the major axis end towards +x, then their opposites. For
        angle = 0 these are the top, right, bottom and left of the ellipse on
        the image."""

        u = np.array([np.cos(self.angle), np.sin(self.angle)])
        v = np.array([-np.sin(self.angle), np.cos(self.angle)])

        return np.array([
            self.center - self.b * v,
            self.center + self.a * u,
            self.center + self.b * v,
            self.center - self.a * u,
        ])

    def __repr__(self):
        if not self.is_ellipse:
            return 'Ellipse(is_ellipse=False)'
        return (
            f'Ellipse(center=[{self.center[0]:.3f}, {self.center[1]:.3f}], '
            + f'a={self.a:.3f}, b={self.b:.3f}, angle={self.angle:.4f})'
        )


def ellipse_points_from_conic(conic):
    """Calculate the center, axes and extremal points of an ellipse from the
    coefficients of the conic A*x^2 + B*x*y + C*y^2 + D*x + E*y + F = 0.

    The coordinates are rotated to remove the cross term, the center and axes
    are read from the rotated coefficients and the center is rotated back.

    Parameters
    ----------
    conic : array of shape (6,)
        The conic coefficients [A, B, C, D, E, F]. Overall sign and scale are
        arbitrary.

    Returns
    -------
    ellipse : Ellipse
        The decomposed ellipse. is_ellipse is False for parabolas, hyperbolas
        and imaginary or point ellipses.

    """

    conic = np.array(conic, dtype=float).flatten()
    A, B, C, D, E, F = conic

    if B**2 - 4*A*C >= 0:
        return Ellipse(conic, is_ellipse=False)

    if A == C:
        two_theta = np.pi/2 if B != 0 else 0.
    else:
        two_theta = np.arctan(B / (A - C))
        if two_theta < 0:
            two_theta += np.pi
    theta = two_theta / 2

    c, s = np.cos(theta), np.sin(theta)
    A_ = A*c**2 + B*c*s + C*s**2
    C_ = A*s**2 - B*c*s + C*c**2
    D_ = D*c + E*s
    E_ = -D*s + E*c

    # Center in the rotated frame, then in the image frame
    x_ = -D_ / (2*A_)
    y_ = -E_ / (2*C_)
    center = [c*x_ - s*y_, s*x_ + c*y_]

    K = D_**2 / (4*A_) + E_**2 / (4*C_) - F
    ax_sq = K / A_
    by_sq = K / C_
    if not (ax_sq > 0 and by_sq > 0):
        return Ellipse(conic, is_ellipse=False)

    if ax_sq >= by_sq:
        a, b, angle = np.sqrt(ax_sq), np.sqrt(by_sq), theta
    else:
        a, b, angle = np.sqrt(by_sq), np.sqrt(ax_sq), theta + np.pi/2

    return Ellipse(
        conic,
        is_ellipse=True,
        center=center,
        a=a,
        b=b,
        angle=angle % np.pi,
    )


def shift_conic(conic, dx, dy):
    """Re-express a conic in a frame whose origin is at [-dx, -dy] in the
    conic's frame, i.e. translate the curve by [dx, dy].

    Parameters
    ----------
    conic : array of shape (6,)
        The conic coefficients [A, B, C, D, E, F].

    dx, dy : scalars
        The translation.

    Returns
    -------
    shifted : array of shape (6,)
        The unit-norm coefficients of the translated conic.

    """

    A, B, C, D, E, F = np.array(conic, dtype=float).flatten()

    shifted = np.array([
        A,
        B,
        C,
        D - 2*A*dx - B*dy,
        E - 2*C*dy - B*dx,
        F + A*dx**2 + B*dx*dy + C*dy**2 - D*dx - E*dy,
    ])

    return shifted / np.linalg.norm(shifted)


def kmeans_mask(values, solver, k, ranks, weights=None):
    """Mark values belonging to a band of k-means clusters.

    Parameters
    ----------
    values : 1D array
        The values to cluster.

    solver : NumericSolver
        Provides weighted_kmeans.

    k : int
        Number of clusters.

    ranks : 2-tuple of ints
        Inclusive [low, high] band of cluster ranks to keep, where clusters
        are ranked by ascending center value.

    weights : 1D array or None
        Sample weights.
        Default: None

    Returns
    -------
    mask : 1D bool array
        True for values in the kept clusters.

    """

    centers, labels = solver.weighted_kmeans(values, weights, k)

    rank = np.empty(k, dtype=int)
    rank[np.argsort(np.array(centers)[:, 0], kind='stable')] = np.arange(k)
    value_rank = rank[labels]

    return (value_rank >= ranks[0]) & (value_rank <= ranks[1])


def get_ellipse(
        grad,
        spot_xy,
        inner_rad,
        outer_rad,
        solver=None,
        f0=None,
        keep_clusters=(0, 2),
        min_points=6,
        accuracy=1e-6,
        max_iter=100,
        thresh=1e-8,
):
    """Fit an ellipse to the edge of a spot from the Scharr filtrate
    amplitude of a diffraction pattern.

    The gradient in an annulus around the spot is split by 2-cluster k-means
    and the high cluster gives a rough conic fit. Every annulus pixel is then
    clustered into 3 groups by its signed distance from the rough ellipse,
    weighted by the gradient, and the pixels in the kept clusters give the
    refined fit. Fitting is done relative to the spot position and the result
    translated back.

    Parameters
    ----------
    grad : 2D array
        Scharr filtrate amplitude of the image.

    spot_xy : 2-list
        Estimated [x, y] spot position in the image. Rounded to the nearest
        pixel.

    inner_rad, outer_rad : scalars
        Radii of the annulus that should contain the spot edge.

    solver : NumericSolver or None
        The numeric solver. If None, a NumericSolver is created.
        Default: None

    f0 : scalar or None
        Scale of the conic fit. If None, (inner_rad + outer_rad) / 2.
        Default: None

    keep_clusters : 2-tuple of ints
        Inclusive band of distance cluster ranks (0: most negative, i.e.
        inside the rough ellipse) used for the refined fit.
        Default: (0, 2)

    min_points : int
        Minimum number of pixels needed for each fit.
        Default: 6

    accuracy : scalar
        Accuracy of the point to ellipse distances.
        Default: 1e-6

    max_iter, thresh : int, scalar
        Conic fit iteration limit and convergence threshold.
        Default: 100, 1e-8

    Returns
    -------
    ellipse : Ellipse
        The fitted ellipse in image coordinates. is_ellipse is False if either
        fit is not an ellipse.

    """

    if solver is None:
        solver = NumericSolver()
    if f0 is None:
        f0 = (inner_rad + outer_rad) / 2

    outer = int(np.ceil(outer_rad))
    mask = annular_mask(2*outer + 1, inner_rad, outer_rad)
    ref = np.around(np.array(spot_xy, dtype=float)).astype(int)

    values, xy = extract_masked_region(
        grad, mask, ref - outer, return_xy=True
    )
    finite = np.isfinite(values)
    values = values[finite]
    local = (xy[finite] - ref).astype(float)
    if values.shape[0] < min_points:
        raise InsufficientPoints(
            f'Only {values.shape[0]} pixels around spot at {list(ref)}.'
        )

    # Rough fit to the pixels of high gradient
    coarse = kmeans_mask(values, solver, 2, (1, 1))
    if np.count_nonzero(coarse) < min_points:
        raise InsufficientPoints(
            f'Only {np.count_nonzero(coarse)} high gradient pixels around '
            + f'spot at {list(ref)}.'
        )
    rough = solver.fit_conic(
        local[coarse], values[coarse], f0, max_iter, thresh
    )
    rough_ellipse = ellipse_points_from_conic(rough)
    if not rough_ellipse.is_ellipse:
        return ellipse_points_from_conic(shift_conic(rough, *ref))

    # Refined fit to the pixels in the kept distance clusters
    dists = solver.distance_to_ellipse(
        local, rough_ellipse.params, accuracy, signed=True
    )
    keep = kmeans_mask(dists, solver, 3, keep_clusters, weights=values)
    if np.count_nonzero(keep) < min_points:
        raise InsufficientPoints(
            f'Only {np.count_nonzero(keep)} pixels kept after distance '
            + f'clustering around spot at {list(ref)}.'
        )
    refined = solver.fit_conic(
        local[keep], values[keep], f0, max_iter, thresh
    )

    return ellipse_points_from_conic(shift_conic(refined, *ref))


def ellipse_row(image_idx, spot_idx, status, ellipse=None):
    """One row of the ellipse table as a dict."""

    row = {
        'image': int(image_idx),
        'spot': int(spot_idx),
        'status': status,
        'is_ellipse': False,
    }
    row.update({col: np.nan for col in ellipse_columns[4:]})

    if ellipse is not None and ellipse.is_ellipse:
        row.update({
            'is_ellipse': True,
            'x0': ellipse.center[0],
            'y0': ellipse.center[1],
            'a': ellipse.a,
            'b': ellipse.b,
            'angle': ellipse.angle,
        })
        row.update(dict(zip(extrema_columns, ellipse.extrema.flatten())))

    return row


def get_image_ellipses(
        image,
        spot_xy,
        inner_rad,
        outer_rad,
        image_idx=0,
        solver=None,
        keep_clusters=(0, 2),
        min_points=6,
):
    """Fit ellipses to all the spots in one image.

    Per-spot failures are recorded as statuses rather than raised.

    Parameters
    ----------
    image : 2D array
        The diffraction pattern.

    spot_xy : array of shape (n, 2)
        The [x, y] spot positions in this image.

    inner_rad, outer_rad : scalars
        Radii of the annulus that should contain each spot edge.

    image_idx : int
        Index of the image in the stack. Passed through to the rows.
        Default: 0

    solver : NumericSolver or None
        The numeric solver.
        Default: None

    keep_clusters, min_points :
        See get_ellipse.

    Returns
    -------
    rows : list of dicts
        One ellipse table row per spot.

    """

    grad = gradient_amplitude(np.asarray(image, dtype=float))

    rows = []
    for spot_idx, xy in enumerate(np.array(spot_xy, ndmin=2)):
        try:
            ellipse = get_ellipse(
                grad,
                xy,
                inner_rad,
                outer_rad,
                solver=solver,
                keep_clusters=keep_clusters,
                min_points=min_points,
            )
        except DiskAtlasError as err:
            rows.append(ellipse_row(image_idx, spot_idx, err.status))
            continue

        status = STATUS_OK if ellipse.is_ellipse else STATUS_NOT_ELLIPSE
        rows.append(ellipse_row(image_idx, spot_idx, status, ellipse))

    return rows
