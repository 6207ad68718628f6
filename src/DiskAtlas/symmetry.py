import numpy as np
from numpy.linalg import solve

from scipy.ndimage import map_coordinates
from scipy.fft import rfft

from skimage.transform import downscale_local_mean

# %%


def pearson_corr(vect1, vect2):
    """Pearson product moment correlation coefficient of 2 datasets, using
    only the elements that are finite in both.

    Parameters
    ----------
    vect1, vect2 : arrays of the same shape
        The datasets.

    Returns
    -------
    r : scalar
        The correlation coefficient. 0 if there are fewer than 2 shared values
        or either dataset is constant.

    """

    vect1 = np.asarray(vect1, dtype=float).flatten()
    vect2 = np.asarray(vect2, dtype=float).flatten()
    valid = np.isfinite(vect1) & np.isfinite(vect2)
    if np.count_nonzero(valid) < 2:
        return 0.

    v1 = vect1[valid] - np.mean(vect1[valid])
    v2 = vect2[valid] - np.mean(vect2[valid])
    denom = np.sqrt(np.sum(v1**2) * np.sum(v2**2))
    if denom == 0:
        return 0.

    return float(np.sum(v1 * v2) / denom)


def reflect_image(image, x0, y0, angle):
    """Reflect an image about a line.

    Parameters
    ----------
    image : 2D array
        The image.

    x0, y0 : scalars
        A point on the mirror line.

    angle : scalar
        Direction of the line in radians, measured from +x towards +y.

    Returns
    -------
    reflected : 2D array
        The reflected image. NaN where the reflection falls off the image.

    """

    y, x = np.indices(image.shape, dtype=float)
    u = np.array([np.cos(angle), np.sin(angle)])
    dx, dy = x - x0, y - y0
    proj = dx*u[0] + dy*u[1]
    xr = x0 + 2*proj*u[0] - dx
    yr = y0 + 2*proj*u[1] - dy

    return map_coordinates(
        np.asarray(image, dtype=float),
        [yr, xr],
        order=1,
        mode='constant',
        cval=np.nan,
    )


def mirror_corr(image, x0, y0, angle):
    """Pearson correlation of an image with its reflection about a line."""
    return pearson_corr(image, reflect_image(image, x0, y0, angle))


def symmetry_axes(acc, origin_x, origin_y, num_angles=120, target_size=0):
    """Score mirror lines through a point at evenly spaced angles.

    The pattern is first downsampled by the largest power of 2 that keeps its
    smaller side at least target_size. Each line is scored by the Pearson
    correlation of the pattern with its reflection about the line.

    Parameters
    ----------
    acc : 2D array
        The diffraction pattern, usually the aligned average. NaN pixels are
        ignored.

    origin_x, origin_y : scalars
        The point the lines pass through, in acc pixel coordinates.

    num_angles : int
        Number of angles in [0, pi) to score. Line i has angle
        i * pi / num_angles.
        Default: 120

    target_size : int
        Minimum size of the downsampled pattern. If 0, no downsampling.
        Default: 0

    Returns
    -------
    corr : 1D array of length num_angles
        The correlation for each angle.

    """

    acc = np.asarray(acc, dtype=float)

    factor = 1
    if target_size > 0:
        while np.min(acc.shape) / (2*factor) >= target_size:
            factor *= 2
    if factor > 1:
        acc = downscale_local_mean(acc, (factor, factor))
        origin_x = (origin_x + 0.5) / factor - 0.5
        origin_y = (origin_y + 0.5) / factor - 0.5

    angles = np.arange(num_angles) * np.pi / num_angles
    corr = np.array([
        mirror_corr(acc, origin_x, origin_y, angle) for angle in angles
    ])

    return corr


def repeating_max_loc(corr, num_angles, pos_mir_sym=(2, 4, 6, 8)):
    """Locate the maxima of noisy data that repeats an integer number of
    times.

    The number of repeats is the candidate with the highest Fourier power.
    That many evenly spaced maxima are then located, each refined to the
    highest value within a quarter spacing of its expected position.

    Parameters
    ----------
    corr : 1D array
        The data, e.g. mirror line correlations from symmetry_axes. Treated
        as periodic.

    num_angles : int
        The number of elements of corr.

    pos_mir_sym : tuple of ints
        Candidate numbers of maxima.
        Default: (2, 4, 6, 8)

    Returns
    -------
    max_pos : 1D int array
        Indices of the maxima, in ascending order.

    """

    corr = np.asarray(corr, dtype=float)[:num_angles]
    power = np.abs(rfft(corr - np.mean(corr)))**2

    candidates = [n for n in pos_mir_sym if 0 < n < power.shape[0]]
    if len(candidates) == 0:
        raise ValueError(
            f'No repeat count in {pos_mir_sym} can be resolved from '
            + f'{num_angles} values.'
        )
    n_max = candidates[np.argmax([power[n] for n in candidates])]

    spacing = num_angles / n_max
    offsets = np.arange(int(np.ceil(spacing)))
    scores = [
        np.sum(corr[np.around(offset + np.arange(n_max)*spacing).astype(int)
                    % num_angles])
        for offset in offsets
    ]
    start = offsets[np.argmax(scores)]

    half_window = max(int(spacing / 4), 0)
    max_pos = []
    for k in range(n_max):
        expected = int(np.around(start + k*spacing))
        window = np.arange(expected - half_window, expected + half_window + 1)
        max_pos.append(window[np.argmax(corr[window % num_angles])]
                       % num_angles)

    return np.sort(np.unique(max_pos))


def refine_mir_pos(
        acc,
        max_pos,
        num_angles,
        origin_x,
        origin_y,
        range_,
        num_sub_steps=4,
):
    """Refine the positions of mirror lines.

    Each line is moved perpendicular to itself by up to range_ pixels and
    rotated by up to one angular step in num_sub_steps increments either way.
    The placement with the highest mirror correlation is kept.

    Parameters
    ----------
    acc : 2D array
        The diffraction pattern.

    max_pos : 1D int array
        Indices of the approximate mirror line angles, as returned by
        repeating_max_loc.

    num_angles : int
        Number of angles used by symmetry_axes.

    origin_x, origin_y : scalars
        The point the approximate lines pass through.

    range_ : int
        Maximum perpendicular shift in pixels.

    num_sub_steps : int
        Number of angle increments per angular step.
        Default: 4

    Returns
    -------
    lines : array of shape (n, 3)
        [x, y, angle] of each refined line: the point of the line closest to
        the origin and its direction. Same order as max_pos.

    """

    acc = np.asarray(acc, dtype=float)
    step = np.pi / num_angles
    shifts = np.arange(-int(range_), int(range_) + 1)
    rotations = np.arange(-num_sub_steps, num_sub_steps + 1) \
        * step / num_sub_steps

    lines = []
    for pos in np.array(max_pos, ndmin=1):
        best = None
        for rot in rotations:
            angle = (pos * step + rot) % np.pi
            normal = np.array([-np.sin(angle), np.cos(angle)])
            for shift in shifts:
                x, y = np.array([origin_x, origin_y]) + shift * normal
                score = mirror_corr(acc, x, y, angle)
                if best is None or score > best[0]:
                    best = (score, x, y, angle)
        lines.append(best[1:])

    return np.array(lines).reshape((-1, 3))


def avg_origin(lines):
    """Estimate the center of symmetry as the mean of the points defining a
    set of mirror lines.

    Parameters
    ----------
    lines : array of shape (n, 3)
        [x, y, angle] of each line, as returned by refine_mir_pos.

    Returns
    -------
    origin : array of shape (2,)
        The [x, y] estimate.

    """

    lines = np.array(lines, dtype=float).reshape((-1, 3))

    return np.mean(lines[:, :2], axis=0)


def average_intersection(lines, min_sin=1e-6):
    """Estimate the center of symmetry as the mean of all pairwise
    intersections of a set of mirror lines.

    Parameters
    ----------
    lines : array of shape (n, 3)
        [x, y, angle] of each line, as returned by refine_mir_pos.

    min_sin : scalar
        Pairs whose angle has a smaller sine are parallel and skipped.
        Default: 1e-6

    Returns
    -------
    origin : array of shape (2,)
        The [x, y] estimate.

    """

    lines = np.array(lines, dtype=float).reshape((-1, 3))

    points = []
    for i in range(lines.shape[0]):
        for j in range(i + 1, lines.shape[0]):
            u_i = [np.cos(lines[i, 2]), np.sin(lines[i, 2])]
            u_j = [np.cos(lines[j, 2]), np.sin(lines[j, 2])]
            if np.abs(np.sin(lines[j, 2] - lines[i, 2])) < min_sin:
                continue
            # p_i + s*u_i = p_j + t*u_j
            s, _ = solve(
                np.array([u_i, [-u_j[0], -u_j[1]]]).T,
                lines[j, :2] - lines[i, :2],
            )
            points.append(lines[i, :2] + s * np.array(u_i))

    if len(points) == 0:
        raise ValueError('At least 2 non-parallel lines are needed.')

    return np.mean(points, axis=0)
