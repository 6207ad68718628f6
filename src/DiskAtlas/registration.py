import warnings

import numpy as np
from numpy.linalg import lstsq

import pandas as pd

from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components

from DiskAtlas.system import ExecutionContext
from DiskAtlas.errors import DisconnectedStack, RegionEmpty
from DiskAtlas.image import disk_footprint, extract_masked_region
from DiskAtlas.fourier import prime_image, max_phase_corr

# %%


def get_image_pairs(n_images, max_sep=None):
    """List the image pairs (i, j), i < j, to correlate.

    Parameters
    ----------
    n_images : int
        The number of images in the stack.

    max_sep : int or None
        If an int, only pairs at most this far apart in the stack order are
        used. If None, all pairs are used.
        Default: None

    Returns
    -------
    pairs : list of 2-tuples
        The pairs.

    """

    if max_sep is None:
        max_sep = n_images

    return [
        (i, j) for i in range(n_images) for j in range(i + 1, n_images)
        if j - i <= max_sep
    ]


def prime_images(images, annulus_fft, circle_fft, window=None, context=None):
    """Prime every image of a stack for alignment. See prime_image.

    Parameters
    ----------
    images : list of 2D arrays
        The image stack. All images must have the same shape.

    annulus_fft, circle_fft : 2D complex arrays
        Frequency domain filters used to prime the images.

    window : 2D array or None
        Window applied to the images when priming.
        Default: None

    context : ExecutionContext or None
        The compute backend.

    Returns
    -------
    primed : list of 2D complex arrays
        The FFTs of the primed images.

    """

    if context is None:
        context = ExecutionContext()

    shapes = {np.shape(image) for image in images}
    if len(shapes) > 1:
        raise ValueError(f'Images must all have the same shape: {shapes}')

    context.log('Priming images...')
    primed = context.parallel_map(
        prime_image,
        [(image, annulus_fft, circle_fft, window, context)
         for image in images],
        desc='Priming',
    )

    return primed


def pairwise_phase_corr(
        primed,
        gauss_fft=None,
        max_sep=None,
        tie_toler=1e-3,
        context=None,
):
    """Phase correlate primed images pairwise.

    Parameters
    ----------
    primed : list of 2D complex arrays
        The FFTs of the primed images.

    gauss_fft : 2D array or None
        Low pass filter applied to the normalized cross-power spectra.
        Default: None

    max_sep : int or None
        Only correlate images at most this far apart in the stack. If None,
        all pairs are correlated.
        Default: None

    tie_toler : scalar
        Tolerance for near-equal correlation maxima. See max_phase_corr.
        Default: 1e-3

    context : ExecutionContext or None
        The compute backend.

    Returns
    -------
    rel_pos : pandas.DataFrame
        One row per pair with columns 'dx', 'dy' (shift of image j relative
        to image i), 'corr' (maximum phase correlation), 'i' and 'j'.

    """

    if context is None:
        context = ExecutionContext()

    pairs = get_image_pairs(len(primed), max_sep)
    context.log(f'Correlating {len(pairs)} image pairs...')
    results = context.parallel_map(
        max_phase_corr,
        [(primed[i], primed[j], i, j, gauss_fft, tie_toler, context)
         for i, j in pairs],
        desc='Phase correlation',
    )

    rel_pos = pd.DataFrame(results, columns=['dx', 'dy', 'corr', 'i', 'j'])
    rel_pos = rel_pos.astype({'i': int, 'j': int})

    return rel_pos


def img_rel_pos(
        images,
        annulus_fft,
        circle_fft,
        gauss_fft=None,
        window=None,
        max_sep=None,
        tie_toler=1e-3,
        context=None,
):
    """Calculate the relative positions between images needed to align them.

    Each image is primed once (see prime_image) and the primed images are
    phase correlated pairwise.

    Parameters
    ----------
    images : list of 2D arrays
        The image stack. All images must have the same shape.

    annulus_fft, circle_fft : 2D complex arrays
        Frequency domain filters used to prime the images.

    gauss_fft : 2D array or None
        Low pass filter applied to the normalized cross-power spectra.
        Default: None

    window : 2D array or None
        Window applied to the images when priming.
        Default: None

    max_sep, tie_toler :
        See pairwise_phase_corr.

    context : ExecutionContext or None
        The compute backend.

    Returns
    -------
    rel_pos : pandas.DataFrame
        See pairwise_phase_corr.

    """

    primed = prime_images(images, annulus_fft, circle_fft, window, context)

    return pairwise_phase_corr(primed, gauss_fft, max_sep, tie_toler, context)


def refine_rel_pos(rel_pos, n_images, min_corr=0., strict=False):
    """Refine the positions of the images relative to the first image using
    all the known relative positions.

    The offsets p_k are found by weighted least squares on the equations
    p_j - p_i = d_ij, weighted by the phase correlation of each pair, with
    p_0 = 0. Pairs need not form a complete graph, but each image must be
    connected to the first one through some path of pairs.

    Parameters
    ----------
    rel_pos : pandas.DataFrame
        Pairwise relative positions as returned by img_rel_pos.

    n_images : int
        The number of images in the stack.

    min_corr : scalar
        Pairs with correlation at or below this value are ignored.
        Default: 0.

    strict : bool
        If True, raise DisconnectedStack when some image is not connected to
        the first image. If False, those images are flagged and warned about.
        Default: False

    Returns
    -------
    positions : pandas.DataFrame
        Indexed by image. Columns 'dx', 'dy' (offsets relative to the first
        image), 'dx_px', 'dy_px' (rounded offsets) and 'connected'.

    """

    used = rel_pos[rel_pos['corr'] > min_corr]
    i_ = used['i'].to_numpy(dtype=int)
    j_ = used['j'].to_numpy(dtype=int)

    graph = coo_matrix(
        (np.ones(len(used)), (i_, j_)), shape=(n_images, n_images)
    )
    _, labels = connected_components(graph, directed=False)
    connected = labels == labels[0]

    disconnected = list(np.nonzero(~connected)[0])
    if len(disconnected) > 0:
        if strict:
            raise DisconnectedStack(disconnected)
        warnings.warn(
            f'Images {disconnected} are not connected to the reference '
            + 'image and will not be aligned.'
        )

    positions = pd.DataFrame(
        {'dx': np.nan, 'dy': np.nan, 'connected': connected},
        index=pd.RangeIndex(n_images, name='image'),
    )
    positions.loc[0, ['dx', 'dy']] = 0.

    # Unknowns: offsets of the connected images other than the reference
    unknowns = [k for k in np.nonzero(connected)[0] if k != 0]
    if len(unknowns) > 0:
        col = {k: n for n, k in enumerate(unknowns)}
        keep = connected[i_] & connected[j_]
        i_, j_ = i_[keep], j_[keep]
        d = used.loc[:, ['dx', 'dy']].to_numpy(dtype=float)[keep]
        w = np.sqrt(used['corr'].to_numpy(dtype=float)[keep])

        A = np.zeros((len(i_), len(unknowns)))
        for row, (i, j) in enumerate(zip(i_, j_)):
            if j != 0:
                A[row, col[j]] += 1
            if i != 0:
                A[row, col[i]] -= 1

        p = lstsq(A * w[:, None], d * w[:, None], rcond=None)[0]
        positions.loc[unknowns, ['dx', 'dy']] = p

    positions['dx_px'] = np.round(positions['dx']).astype('Int64')
    positions['dy_px'] = np.round(positions['dy']).astype('Int64')

    return positions


def align_and_avg(images, positions):
    """Align the images using their refined positions and average over the
    aligned pixels.

    Parameters
    ----------
    images : list of 2D arrays
        The image stack.

    positions : pandas.DataFrame
        Image offsets relative to the first image, as returned by
        refine_rel_pos. Only connected images are used.

    Returns
    -------
    acc : 2D array
        Average of the aligned images. NaN where no image contributes.

    num_overlap : 2D int array
        The number of images contributing to each pixel of acc.

    origin : array of shape (2,)
        The [x, y] position of pixel (0, 0) of the first image in acc.

    """

    h, w = np.shape(images[0])
    used = positions[positions['connected']]
    d = used.loc[:, ['dx_px', 'dy_px']].to_numpy(dtype=int)
    max_d = np.max(d, axis=0)
    min_d = np.min(d, axis=0)

    acc_h = h + max_d[1] - min_d[1]
    acc_w = w + max_d[0] - min_d[0]
    acc = np.zeros((acc_h, acc_w))
    num_overlap = np.zeros((acc_h, acc_w), dtype=int)

    for k, (dx, dy) in zip(used.index, d):
        x0, y0 = max_d[0] - dx, max_d[1] - dy
        acc[y0:y0 + h, x0:x0 + w] += images[k]
        num_overlap[y0:y0 + h, x0:x0 + w] += 1

    with np.errstate(invalid='ignore', divide='ignore'):
        acc = np.where(num_overlap > 0, acc / num_overlap, np.nan)

    return acc, num_overlap, max_d


def create_spot_maps(images, spot_pos, positions, origin, radius):
    """Combine the regions of k space mapped out by each spot across the
    image stack.

    For each spot, the disk of pixels around the spot in every image is placed
    in a map at its raw detector position relative to the spot position in the
    first image. Overlapping contributions are averaged.

    Parameters
    ----------
    images : list of 2D arrays
        The image stack.

    spot_pos : array of shape (n, 2)
        Spot [x, y] positions in the aligned average (acc) frame.

    positions : pandas.DataFrame
        Image offsets relative to the first image.

    origin : array of shape (2,)
        Position of the first image's pixel (0, 0) in the acc frame.

    radius : int
        Radius about the spot positions to extract pixels from.

    Returns
    -------
    spot_maps : list of 2D arrays
        One map per spot. NaN where no image contributes. Map pixel
        [radius - min(dx), radius - min(dy)] (as [x, y]) corresponds to the
        spot position in the first image.

    """

    radius = int(np.ceil(radius))
    disk = disk_footprint(radius)

    used = positions[positions['connected']]
    d = used.loc[:, ['dx_px', 'dy_px']].to_numpy(dtype=int)
    min_d = np.min(d, axis=0)
    map_h, map_w = np.flip(np.max(d, axis=0) - min_d) + 2*radius + 1

    spot_maps = []
    for xy in np.array(spot_pos, ndmin=2):
        ref_xy = np.array(xy) - origin
        map_sum = np.zeros((map_h, map_w))
        map_num = np.zeros((map_h, map_w), dtype=int)

        for k, d_k in zip(used.index, d):
            top_left = ref_xy + d_k - radius
            try:
                vals, pix = extract_masked_region(
                    images[k], disk, top_left, return_xy=True
                )
            except RegionEmpty:
                continue
            m = pix - ref_xy - min_d + radius
            np.add.at(map_sum, (m[:, 1], m[:, 0]), vals)
            np.add.at(map_num, (m[:, 1], m[:, 0]), 1)

        with np.errstate(invalid='ignore', divide='ignore'):
            spot_maps.append(
                np.where(map_num > 0, map_sum / map_num, np.nan)
            )

    return spot_maps
