import numpy as np

import pandas as pd

from scipy.ndimage import maximum_filter

from DiskAtlas.system import ExecutionContext
from DiskAtlas.image import (
    disk_footprint,
    gradient_amplitude,
    threshold_proportion,
)
from DiskAtlas.fourier import (
    extended_gauss,
    create_annulus,
    create_circle,
    cross_correlation,
)

# %%


def detect_peaks(
        image,
        min_dist=4,
        thresh=0,
        min_sep=None,
        max_peaks=None,
):
    """Find the local maxima of an image, strongest first.

    A pixel is a candidate if it is the maximum of the disk of radius
    min_dist around it and its value is at least thresh. Candidates are
    accepted in order of decreasing value, skipping any within min_sep of a
    peak already accepted.

    Parameters
    ----------
    image : 2D array
        The image to be analyzed.

    min_dist : scalar
        Radius of the neighborhood a peak must be the maximum of.
        Default: 4

    thresh : scalar
        Minimum peak value (inclusive).
        Default: 0

    min_sep : scalar or None
        Peaks at or within this distance of a stronger peak are dropped. If
        None, min_dist.
        Default: None

    max_peaks : int or None
        Maximum number of peaks to return. If None, no limit.
        Default: None

    Returns
    -------
    peaks : pandas.DataFrame
        Columns 'x', 'y' and 'max', sorted by descending 'max'.

    """

    image = np.asarray(image, dtype=float)
    min_dist = max(min_dist, 1)
    if min_sep is None:
        min_sep = min_dist

    candidates = (
        maximum_filter(image, footprint=disk_footprint(min_dist)) == image
    ) & (image >= thresh)
    y, x = np.nonzero(candidates)
    vals = image[y, x]

    kept = []
    for k in np.argsort(-vals, kind='stable'):
        if max_peaks is not None and len(kept) >= max_peaks:
            break
        if len(kept) > 0:
            dists = np.hypot(x[kept] - x[k], y[kept] - y[k])
            if np.min(dists) <= min_sep:
                continue
        kept.append(k)

    return pd.DataFrame({'x': x[kept], 'y': y[kept], 'max': vals[kept]})


def spot_xcorr(
        acc,
        radius,
        thickness,
        gauss_sigma=1.,
        context=None,
):
    """Product of the annulus and circle cross-correlations of a diffraction
    pattern.

    The Scharr filtrate amplitude is correlated with an annulus and the
    pattern itself with a circle. Both responses are clipped at zero and
    multiplied, which suppresses the halo the annulus correlation leaves
    around each spot.

    Parameters
    ----------
    acc : 2D array
        The pattern, usually the average of the aligned images. NaN pixels
        are treated as undefined and have zero response.

    radius : scalar
        Spot radius.

    thickness : scalar
        Thickness of the annulus.

    gauss_sigma : scalar
        Standard deviation of the Gaussian used to blur the filters.
        Default: 1.

    context : ExecutionContext or None
        The compute backend.

    Returns
    -------
    xcorr : 2D array
        The combined response.

    """

    if context is None:
        context = ExecutionContext(n_jobs=1, verbose=False)

    acc = np.asarray(acc, dtype=float)
    defined = ~np.isnan(acc)
    filled = np.where(defined, acc, np.nanmean(acc))

    gauss_fft = extended_gauss(acc.shape, gauss_sigma, context)
    annulus_fft = create_annulus(acc.shape, radius, thickness, context)
    circle_fft = create_circle(acc.shape, radius, context)

    annulus_xcorr = cross_correlation(
        gradient_amplitude(filled), annulus_fft * gauss_fft, context
    )
    circle_xcorr = cross_correlation(filled, circle_fft * gauss_fft, context)

    xcorr = np.clip(annulus_xcorr, 0, None) * np.clip(circle_xcorr, 0, None)
    xcorr[~defined] = 0

    return xcorr


def get_spot_pos(
        acc,
        radius,
        thickness,
        thresh_frac=0.01,
        gauss_sigma=1.,
        hist_bins=1000,
        max_spots=None,
        context=None,
):
    """Find the positions of the spots in an aligned average pattern.

    Candidates are local maxima of spot_xcorr above a rank-based threshold
    (threshold_proportion over the non-zero response). They are accepted in
    order of decreasing response, skipping any within one radius of a spot
    already accepted.

    Parameters
    ----------
    acc : 2D array
        Average of the aligned diffraction patterns.

    radius : scalar
        Spot radius.

    thickness : scalar
        Thickness of the annulus correlated with the Scharr filtrate.

    thresh_frac : scalar
        Proportion of the response to keep when thresholding.
        Default: 0.01

    gauss_sigma : scalar
        Standard deviation of the Gaussian used to blur the filters.
        Default: 1.

    hist_bins : int
        Number of histogram bins used for thresholding.
        Default: 1000

    max_spots : int or None
        Maximum number of spots to return. If None, no limit.
        Default: None

    context : ExecutionContext or None
        The compute backend.

    Returns
    -------
    spot_pos : int array of shape (n, 2)
        The [x, y] spot positions, strongest first.

    xcorr : 2D array
        The combined cross-correlation response.

    thresh : scalar
        The response threshold.

    """

    xcorr = spot_xcorr(acc, radius, thickness, gauss_sigma, context)
    thresh, _, _ = threshold_proportion(
        xcorr, thresh_frac, hist_bins=hist_bins, non_zero=True
    )

    peaks = detect_peaks(
        xcorr,
        min_dist=radius,
        thresh=thresh,
        min_sep=radius,
        max_peaks=max_spots,
    )
    spot_pos = peaks.loc[:, ['x', 'y']].to_numpy(dtype=int).reshape((-1, 2))

    return spot_pos, xcorr, thresh
