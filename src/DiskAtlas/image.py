import numpy as np
from numpy.linalg import norm

from scipy.ndimage import correlate

from DiskAtlas.errors import RegionEmpty

# %%
"""Scharr derivative kernels (x derivative; transpose for y)"""
scharr_kernel = np.array([
    [-3, 0, 3],
    [-10, 0, 10],
    [-3, 0, 3],
], dtype=float)

# %%


def pixel_dists(shape, origin):
    """Distance of every pixel of an array from a point.

    Parameters
    ----------
    shape : 2-tuple
        The (h, w) array shape.

    origin : 2-list
        The [x, y] point.

    Returns
    -------
    r : 2D array with shape 'shape'

    """

    yy, xx = np.ogrid[:shape[0], :shape[1]]

    return np.hypot(xx - origin[0], yy - origin[1])


def disk_footprint(radius):
    """Boolean disk of pixels within radius of the center of a
    (2 floor(radius) + 1) square array."""

    half = int(np.floor(radius))

    return pixel_dists((2*half + 1,) * 2, (half, half)) <= radius


def gradient_amplitude(image):
    """Amplitude of the Scharr filtrate of an image.

    The directional derivatives are summed in quadrature. Borders are handled
    by mirroring the image about the edge pixels (scipy 'mirror' mode), so the
    output is defined everywhere and has the same shape as the input.

    Parameters
    ----------
    image : 2D array
        The image.

    Returns
    -------
    grad : 2D array
        The gradient amplitude.

    """

    image = np.asarray(image, dtype=float)
    gradx = correlate(image, scharr_kernel, mode='mirror')
    grady = correlate(image, scharr_kernel.T, mode='mirror')

    return np.hypot(gradx, grady)


def annular_mask(size, inner_rad, outer_rad):
    """Create a square annular mask.

    Parameters
    ----------
    size : int
        Side length of the mask. Must be odd so the annulus is centered on a
        pixel.

    inner_rad, outer_rad : scalars
        Inner and outer radius of the annulus. Pixels whose distance from the
        central pixel is in [inner_rad, outer_rad] are set.

    Returns
    -------
    mask : 2D bool array of shape (size, size)
        The annular mask.

    """

    if size % 2 != 1:
        raise ValueError(f'Mask size must be odd, got {size}.')

    c = size // 2
    r = pixel_dists((size, size), (c, c))
    mask = (r >= inner_rad) & (r <= outer_rad)

    return mask


def get_mask_region(shape, mask, top_left):
    """Clip a mask placed on an image so it does not go over the image edges.

    Parameters
    ----------
    shape : 2-tuple
        The image shape.

    mask : 2D array
        The mask. Non-zero elements are marked.

    top_left : 2-list
        The [x, y] image coordinates of the top left corner of the mask. May
        be negative.

    Returns
    -------
    img_slice : tuple of slices
        The slices of the image covered by the clipped mask.

    mask_clipped : 2D bool array
        The part of the mask lying on the image.

    """

    h, w = shape
    mh, mw = mask.shape
    x0, y0 = [int(i) for i in top_left]

    llimx = max(0, -x0)
    ulimx = min(mw, w - x0)
    llimy = max(0, -y0)
    ulimy = min(mh, h - y0)

    if (ulimx <= llimx) or (ulimy <= llimy):
        raise RegionEmpty(
            f'Mask at {[x0, y0]} lies entirely outside the image.'
        )

    mask_clipped = mask[llimy:ulimy, llimx:ulimx].astype(bool)
    if not np.any(mask_clipped):
        raise RegionEmpty(
            f'No part of the mask at {[x0, y0]} lies on the image.'
        )

    img_slice = (
        slice(y0 + llimy, y0 + ulimy),
        slice(x0 + llimx, x0 + ulimx),
    )

    return img_slice, mask_clipped


def extract_masked_region(image, mask, top_left, return_xy=False):
    """Extract image values at the marked elements of a mask.

    Parameters
    ----------
    image : 2D array
        The image.

    mask : 2D array
        The mask. Non-zero elements are extracted.

    top_left : 2-list
        The [x, y] image coordinates of the top left corner of the mask.

    return_xy : bool
        Whether to also return the [x, y] image coordinates of the values.
        Default: False

    Returns
    -------
    values : 1D array
        The extracted values in row-major order.

    xy : array of shape (n, 2)
        The image coordinates of the values. Only returned if return_xy.

    """

    img_slice, mask_clipped = get_mask_region(image.shape, mask, top_left)

    values = image[img_slice][mask_clipped]

    if return_xy:
        y, x = np.nonzero(mask_clipped)
        xy = np.stack([
            x + img_slice[1].start,
            y + img_slice[0].start,
        ], axis=1)
        return values, xy

    return values


def hann_2d(shape):
    """Creates a 2D Hann window without the square artifact generated by the
    common method.

    The resulting Hann function is round (elliptical for rectangular shapes).

    Parameters
    ----------
    shape : int or 2-tuple
        The dimension(s) of the Hann window to be created.

    Returns
    -------
    hann : 2d array
        The Hann window.

    """

    if np.isscalar(shape):
        shape = (int(shape),) * 2
    h, w = shape

    y, x = np.indices((h, w))
    r = norm(np.array([
        (x - w/2) * 2*np.pi / w,
        (y - h/2) * 2*np.pi / h,
    ]), axis=0)

    hann = np.where(r > np.pi, 0, np.cos(r) + 1) / 2

    return hann


def apply_window(image, window):
    """Multiply an image by a window function.

    Parameters
    ----------
    image, window : 2D arrays of the same shape

    Returns
    -------
    windowed : 2D array
        The windowed image.

    """

    if image.shape != window.shape:
        raise ValueError(
            f'Window shape {window.shape} does not match image shape '
            + f'{image.shape}.'
        )

    return image * window


def threshold_proportion(
        image,
        thresh_frac,
        hist_bins=1000,
        non_zero=False,
):
    """Threshold the highest proportion of values in an image using a
    histogram.

    Bins are accumulated from the top of the histogram until the total count
    exceeds thresh_frac times the number of values considered. The lower edge
    of that bin is the threshold, so the retained proportion is within one bin
    of thresh_frac.

    Parameters
    ----------
    image : ndarray
        The image. NaN values are ignored.

    thresh_frac : scalar
        Proportion of the values to retain, in (0, 1].

    hist_bins : int
        Number of histogram bins.
        Default: 1000

    non_zero : bool
        If True, only non-zero values are used to decide the threshold and
        are marked in the output mask.
        Default: False

    Returns
    -------
    thresh : scalar
        The threshold value.

    mask : bool array of image.shape
        True where values are considered and >= thresh.

    num_considered : int
        The number of values the proportion refers to.

    """

    image = np.asarray(image, dtype=float)
    valid = ~np.isnan(image)
    if non_zero:
        valid &= image != 0

    vals = image[valid]
    num_considered = vals.size
    if num_considered == 0:
        return np.nan, np.zeros(image.shape, dtype=bool), 0

    min_, max_ = np.min(vals), np.max(vals)
    if min_ == max_:
        return min_, valid, num_considered

    hist, edges = np.histogram(vals, bins=hist_bins, range=(min_, max_))

    use_num = thresh_frac * num_considered
    cumulative = np.cumsum(hist[::-1])
    exceeded = np.nonzero(cumulative > use_num)[0]
    if exceeded.size == 0:
        ind = 0
    else:
        ind = hist_bins - 1 - exceeded[0]
    thresh = edges[ind]

    mask = np.zeros(image.shape, dtype=bool)
    mask[valid] = vals >= thresh

    return thresh, mask, num_considered

