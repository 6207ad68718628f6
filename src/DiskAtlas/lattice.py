import numpy as np
from numpy.linalg import norm, lstsq, solve

from scipy.optimize import minimize

# %%


def make_lattice(
        basis,
        origin,
        min_order=0,
        max_order=10,
        xlim=None,
        ylim=None
):
    """
    Generate list of lattice points in fractional and cartesian coordinates.

    Parameters
    ----------
    basis : array of shape (2,2)
        The array of basis vectors as row vectors [x, y] in cartesin
        coordinates.

    origin : array of shape (2,)
        The origin point of the lattice.

    min_order : int
        The minimum order of points allowed in the lattice. e.g. if 2, zeroith
        and first order points are excluded.
        Default: 0

    max_order : int
        The maximum order of points allowed in the lattice. e.g if 5, only
        points up to order 5 are included.
        Default: 10

    xlim, ylim : 2-tuples or None
        The minimum and maximum limits of allowed cartesian coordinates in the
        x & y directions. Lower limits are inclusive, upper limits exclusive.
        Default: None.

    Returns
    -------
    xy : ndarray
        The [x, y] cartesian coordinates of the lattice points.

    M : ndarray
        The [u, v] fractional coordinates of the lattice points.

    """

    M = np.array(
        [[i, j]
         for i in range(-max_order, max_order+1)
         for j in range(-max_order, max_order+1)
         if (np.abs(i) >= min_order or np.abs(j) >= min_order)]
    )

    xy = M @ np.array(basis) + np.array(origin)

    if xlim is not None:
        xlimited = ((xy[:, 0] >= xlim[0]) & (xy[:, 0] < xlim[1]))
        xy = xy[xlimited]
        M = M[xlimited]
    if ylim is not None:
        ylimited = ((xy[:, 1] >= ylim[0]) & (xy[:, 1] < ylim[1]))
        xy = xy[ylimited]
        M = M[ylimited]

    return xy, M


def disp_vect_sum_squares(p0, xy, M, weights=None):
    """Objective function for 'fit_lattice()'.

    Parameters
    ----------
    p0 : list-like of shape (6,)
        The current basis guess of the form: [a1x, a1y, a2x, a2y, x0, y0].
        Where [a1x, a1y] is the first basis vector, [a2x, a2y] is the second
        basis vector and [x0, y0] is the origin.

    xy : array-like of shape (n, 2)
        The array of measured [x, y] spot coordinates.

    M : array-like of shape (n, 2)
        The lattice indices corresponding to the xy coordinates.

    weights : array-like of shape (n,) or None
        Weights of the points.

    Returns
    -------
    sum_sq : scalar
        The sum of squared errors given p0.

    """

    dir_struct_matrix = p0[:-2].reshape((-1, 2))
    origin = p0[-2:]
    if weights is None:
        weights = 1

    err_xy = norm(xy - (M @ dir_struct_matrix + origin), axis=1)
    sum_sq = np.sum((err_xy * weights)**2)

    return sum_sq


def fit_lattice(p0, xy, M, fix_origin=False, weights=None):
    """Find the best fit of a rigid lattice to a set of points.

    Parameters
    ----------
    p0 : list-like of shape (6,)
        The initial basis guess of the form: [a1x, a1y, a2x, a2y, x0, y0].
        Where [a1x, a1y] is the first basis vector, [a2x, a2y] is the second
        basis vector and [x0, y0] is the origin.

    xy : array-like of shape (n, 2)
        The array of measured [x, y] spot coordinates.

    M : array-like of shape (n, 2)
        The lattice indices corresponding to the xy coordinates.

    fix_origin : bool
        Whether to fix the origin (if True) or allow it to be refined
        (if False).
        Default: False

    Returns
    -------
    params : list-like of shape (6,)
        The refined basis, using the same form as p0.

    """

    p0 = np.array(p0, dtype=float).flatten()
    x0y0 = p0[-2:]

    if fix_origin:
        params = np.concatenate(
            ((lstsq(M, xy - x0y0, rcond=-1)[0]).flatten(), x0y0)
        )

    else:
        params = minimize(
            disp_vect_sum_squares,
            p0,
            args=(xy, M, weights),
            method='BFGS',
        ).x

    return params


def _reduce_basis(v1, v2):
    """Lagrange-Gauss reduction of a 2D basis to its shortest vectors."""

    for _ in range(100):
        if norm(v2) < norm(v1):
            v1, v2 = v2, v1
        m = np.rint(np.dot(v1, v2) / np.dot(v1, v1))
        if m == 0:
            break
        v2 = v2 - m * v1

    return v1, v2


def get_lattice_vectors(positions, toler=2., min_count=None, min_angle=20):
    """Use a set of known spot positions to get approximate lattice vectors
    for a diffraction pattern.

    All pairwise spot displacements are grouped (vectors within 'toler' of a
    group mean join the group). The shortest group with at least 'min_count'
    members gives the first lattice vector. The shortest group that is not
    collinear with it gives the second. The pair is then reduced to the
    shortest equivalent basis.

    Parameters
    ----------
    positions : array of shape (n, 2)
        Known [x, y] spot positions.

    toler : scalar
        Maximum distance of a displacement from a group mean for it to join
        the group.
        Default: 2.

    min_count : int or None
        Minimum number of displacements in a group for it to be used. If None,
        2 if there are at least 4 spots, else 1.
        Default: None

    min_angle : scalar
        Minimum angle, in degrees, between the two lattice vectors.
        Default: 20

    Returns
    -------
    lattice_vectors : int array of shape (k, 2)
        The lattice vectors as rows. k is 0 for fewer than 2 spots and 1 if
        all spots are collinear.

    """

    pos = np.array(positions, dtype=float).reshape((-1, 2))
    if pos.shape[0] < 2:
        return np.zeros((0, 2), dtype=int)

    if min_count is None:
        min_count = 2 if pos.shape[0] >= 4 else 1

    i, j = np.triu_indices(pos.shape[0], k=1)
    vects = pos[j] - pos[i]
    flip = (vects[:, 1] < 0) | ((vects[:, 1] == 0) & (vects[:, 0] < 0))
    vects[flip] *= -1
    vects = vects[np.argsort(norm(vects, axis=1))]

    sums = []
    counts = []
    for v in vects:
        for k in range(len(sums)):
            mean = sums[k] / counts[k]
            if norm(v - mean) <= toler:
                sums[k] += v
                counts[k] += 1
                break
            elif norm(v + mean) <= toler:
                sums[k] -= v
                counts[k] += 1
                break
        else:
            sums.append(v.copy())
            counts.append(1)

    counts = np.array(counts)
    means = np.array(sums) / counts[:, None]
    if np.max(counts) < min_count:
        min_count = np.max(counts)
    means = means[counts >= min_count]
    means = means[np.argsort(norm(means, axis=1))]
    means = means[norm(means, axis=1) > 0]
    if means.shape[0] == 0:
        return np.zeros((0, 2), dtype=int)

    v1 = means[0]
    v2 = None
    for v in means[1:]:
        sin_ang = np.abs(v1[0]*v[1] - v1[1]*v[0]) / (norm(v1) * norm(v))
        if sin_ang > np.sin(np.radians(min_angle)):
            v2 = v
            break

    if v2 is None:
        return np.rint(v1).astype(int)[None, :]

    v1, v2 = _reduce_basis(v1, v2)

    return np.rint(np.array([v1, v2])).astype(int)


def find_other_spots(
        xcorr,
        positions,
        lattice_vectors,
        thresh,
        radius,
        search_rad=None,
        max_iter=20,
):
    """Use lattice vectors to search for spots that have not been found yet.

    Every known spot is translated by the neighbouring integer combinations of
    the lattice vectors. Where a translated position lies on the image and no
    spot is within one radius of it, the maximum of the response in a small
    window around it is added as a new spot if it reaches the threshold. New
    spots are themselves translated, until no more spots are added.

    Parameters
    ----------
    xcorr : 2D array
        Spot response, e.g. from spot_xcorr.

    positions : array of shape (n, 2)
        Known [x, y] spot positions.

    lattice_vectors : array of shape (k, 2)
        The lattice vectors.

    thresh : scalar
        Minimum response for a new spot.

    radius : scalar
        Spot radius. New positions within this distance of a known spot are
        not searched.

    search_rad : int or None
        Half-width of the window searched around each translated position. If
        None, half the radius (at least 1).
        Default: None

    max_iter : int
        Maximum number of passes over the spots.
        Default: 20

    Returns
    -------
    spot_pos : int array of shape (m, 2)
        The known spots followed by the new spots.

    """

    h, w = xcorr.shape
    pos = [np.array(p, dtype=int) for p in np.array(positions).reshape(-1, 2)]
    vects = np.array(lattice_vectors, dtype=int).reshape((-1, 2))
    if vects.shape[0] == 0 or len(pos) == 0:
        return np.array(pos, dtype=int).reshape((-1, 2))

    if search_rad is None:
        search_rad = max(1, int(radius // 2))

    basis = np.zeros((2, 2), dtype=int)
    basis[:vects.shape[0]] = vects[:2]
    steps, _ = make_lattice(basis, [0, 0], min_order=1, max_order=1)
    steps = np.unique(steps[norm(steps, axis=1) > 0], axis=0).astype(int)

    for _ in range(max_iter):
        num_start = len(pos)
        k = 0
        while k < len(pos):
            for step in steps:
                x, y = pos[k] + step
                if not ((0 <= x < w) and (0 <= y < h)):
                    continue
                if np.min(norm(np.array(pos) - [x, y], axis=1)) <= radius:
                    continue

                x0, x1 = max(x - search_rad, 0), min(x + search_rad + 1, w)
                y0, y1 = max(y - search_rad, 0), min(y + search_rad + 1, h)
                window = xcorr[y0:y1, x0:x1]
                wy, wx = np.unravel_index(np.argmax(window), window.shape)
                if window[wy, wx] < thresh or window[wy, wx] <= 0:
                    continue

                new = np.array([x0 + wx, y0 + wy])
                if np.min(norm(np.array(pos) - new, axis=1)) <= radius:
                    continue
                pos.append(new)
            k += 1

        if len(pos) == num_start:
            break

    return np.array(pos, dtype=int)


def check_spot_pos(
        positions,
        lattice_vectors,
        toler=None,
        snap=True,
        origin_ind=0,
        shape=None,
):
    """Remove or correct spot positions that do not fit the spot lattice.

    Spots are indexed on the lattice anchored at the origin spot. The basis
    and origin are then refined to the inliers with fit_lattice. Spots
    further than 'toler' from their lattice point are moved onto it (snap) or
    removed. Only the closest spot is kept for each lattice index.

    Parameters
    ----------
    positions : array of shape (n, 2)
        The [x, y] spot positions.

    lattice_vectors : array of shape (k, 2)
        The lattice vectors. With fewer than 1 vector or fewer than 2 spots,
        the positions are returned unchanged.

    toler : scalar or None
        Maximum allowed distance from the lattice. If None,
        max(0.05 * shortest lattice vector length, 2).
        Default: None

    snap : bool
        Whether to move outliers onto the lattice (True) or remove them.
        Default: True

    origin_ind : int
        Index of the spot used as the lattice origin.
        Default: 0

    shape : 2-tuple or None
        Image (h, w). If given, snapped spots off the image are removed.
        Default: None

    Returns
    -------
    spot_pos : int array of shape (m, 2)
        The checked spot positions.

    basis : array of shape (2, 2)
        The refined lattice vectors as rows. For a 1-vector lattice, the
        second row is perpendicular to the first and has no meaning.

    origin : array of shape (2,)
        The refined lattice origin.

    """

    pos = np.array(positions, dtype=float).reshape((-1, 2))
    vects = np.array(lattice_vectors, dtype=float).reshape((-1, 2))
    if pos.shape[0] < 2 or vects.shape[0] == 0:
        basis = np.zeros((2, 2))
        basis[:vects.shape[0]] = vects[:2]
        origin = pos[origin_ind] if pos.shape[0] > 0 else np.zeros(2)
        return np.rint(pos).astype(int), basis, origin

    one_d = vects.shape[0] == 1
    if one_d:
        basis = np.array([vects[0], [-vects[0, 1], vects[0, 0]]])
    else:
        basis = vects[:2]

    if toler is None:
        toler = max(0.05 * np.min(norm(vects, axis=1)), 2)

    origin = pos[origin_ind]
    M = np.rint(solve(basis.T, (pos - origin).T).T)
    if one_d:
        M[:, 1] = 0

    # Fit with all spots, then again with the inliers only
    p0 = np.concatenate((basis.flatten(), origin))
    params = fit_lattice(p0, pos, M)
    err = norm(pos - (M @ params[:4].reshape((2, 2)) + params[4:]), axis=1)
    inliers = err <= toler
    if np.count_nonzero(inliers) >= 2:
        params = fit_lattice(params, pos[inliers], M[inliers])

    basis = params[:4].reshape((2, 2))
    origin = params[4:]
    xy_ref = M @ basis + origin
    err = norm(pos - xy_ref, axis=1)

    outliers = err > toler
    if snap:
        pos[outliers] = xy_ref[outliers]
    else:
        keep = ~outliers
        pos, M, err = pos[keep], M[keep], err[keep]

    # One spot per lattice index
    order = np.argsort(err, kind='stable')
    _, first = np.unique(M[order], axis=0, return_index=True)
    keep = np.sort(order[first])
    pos = pos[keep]

    if shape is not None:
        h, w = shape
        on_image = ((pos[:, 0] >= 0) & (pos[:, 0] <= w - 1)
                    & (pos[:, 1] >= 0) & (pos[:, 1] <= h - 1))
        pos = pos[on_image]

    return np.rint(pos).astype(int), basis, origin
