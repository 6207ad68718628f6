import numpy as np

from scipy.fft import ifftshift
from scipy.ndimage import maximum_filter

from DiskAtlas.system import ExecutionContext
from DiskAtlas.image import (
    pixel_dists,
    gradient_amplitude,
    apply_window,
)

# %%


def _kernel_fft(kernel, context=None):
    """FFT of a centered real-space kernel moved to the array origin and
    normalized to unit sum, so its product with an image FFT applies a
    convolution without shifting the image."""

    if context is None:
        context = ExecutionContext(n_jobs=1, verbose=False)

    total = np.sum(kernel)
    if total != 0:
        kernel = kernel / total

    return context.fft(ifftshift(kernel))


def extended_gauss(shape, sigma, context=None):
    """Create the FFT of a Gaussian blurring kernel with the same shape as the
    images it will be applied to.

    Parameters
    ----------
    shape : 2-tuple
        The (h, w) shape of the images.

    sigma : scalar
        Standard deviation of the Gaussian in real-space pixels.

    context : ExecutionContext or None
        The compute backend.

    Returns
    -------
    gauss_fft : 2D complex array
        The Gaussian filter in the frequency domain. It has unit value at
        zero frequency.

    """

    h, w = shape
    r = pixel_dists(shape, (w // 2, h // 2))
    kernel = np.exp(-r**2 / (2 * sigma**2))

    return _kernel_fft(kernel, context)


def create_annulus(shape, radius, thickness, context=None):
    """Create the FFT of an annulus centered on the array origin.

    The inner radius is radius - thickness/2 and the outer radius is
    radius + thickness/2.

    Parameters
    ----------
    shape : 2-tuple
        The (h, w) shape of the images.

    radius : scalar
        Radius of the annulus, halfway between its inner and outer radii.

    thickness : scalar
        Thickness of the annulus.

    context : ExecutionContext or None
        The compute backend.

    Returns
    -------
    annulus_fft : 2D complex array
        The annulus filter in the frequency domain.

    """

    h, w = shape
    r = pixel_dists(shape, (w // 2, h // 2))
    kernel = np.where(
        (r >= radius - thickness/2) & (r <= radius + thickness/2), 1., 0.
    )

    return _kernel_fft(kernel, context)


def create_circle(shape, radius, context=None):
    """Create the FFT of a filled circle centered on the array origin.

    Parameters
    ----------
    shape : 2-tuple
        The (h, w) shape of the images.

    radius : scalar
        Radius of the circle.

    context : ExecutionContext or None
        The compute backend.

    Returns
    -------
    circle_fft : 2D complex array
        The circle filter in the frequency domain.

    """

    h, w = shape
    r = pixel_dists(shape, (w // 2, h // 2))
    kernel = np.where(r <= radius, 1., 0.)

    return _kernel_fft(kernel, context)


def sum_annulus_px(radius, thickness):
    """Number of pixels making up an annulus. Used to normalize annulus
    cross-correlations of different sizes so they can be compared.

    Parameters
    ----------
    radius : scalar
        Average of the annulus inner and outer radii.

    thickness : scalar
        Thickness of the annulus.

    Returns
    -------
    num_px : int
        The pixel count.

    """

    outer = radius + thickness/2
    size = 2 * int(np.ceil(outer)) + 1
    r = pixel_dists((size, size), (size // 2, size // 2))

    return int(np.count_nonzero(
        (r >= radius - thickness/2) & (r <= outer)
    ))


def recur_conv(filter_fft, n):
    """Recursively convolve a filter with its own convolution n times.

    Parameters
    ----------
    filter_fft : 2D complex array
        The filter in the frequency domain.

    n : int
        The number of recursive self-convolutions. 0 returns the filter.

    Returns
    -------
    conv_fft : 2D complex array
        The filter convolved with itself 2**n - 1 times.

    """

    conv_fft = filter_fft
    for _ in range(int(n)):
        conv_fft = conv_fft * conv_fft

    return conv_fft


def cross_correlation(image, filter_fft, context=None):
    """Real part of the cross-correlation of an image with a frequency domain
    filter of the same shape. Filters from this module are symmetric, so
    this is also their convolution."""

    if context is None:
        context = ExecutionContext(n_jobs=1, verbose=False)

    return np.real(context.ifft(
        context.multiply(context.fft(image), filter_fft)
    ))


def prime_image(image, annulus_fft, circle_fft, window=None, context=None):
    """Prime an image for alignment.

    The primed image is the cross-correlation of the windowed Scharr filtrate
    amplitude with an annulus, scaled by the cross-correlation of the
    windowed image with a circle. The circle term suppresses the halo that the
    annulus correlation produces around each spot.

    Parameters
    ----------
    image : 2D array
        The image.

    annulus_fft : 2D complex array
        Frequency domain annulus filter, usually blurred and recursively
        convolved with itself.

    circle_fft : 2D complex array
        Frequency domain circle filter, usually blurred.

    window : 2D array or None
        Window function applied before the transforms (e.g. hann_2d). If None,
        no window is applied.

    context : ExecutionContext or None
        The compute backend.

    Returns
    -------
    primed_fft : 2D complex array
        The FFT of the primed image.

    """

    if context is None:
        context = ExecutionContext(n_jobs=1, verbose=False)

    image = np.asarray(image, dtype=float)
    grad = gradient_amplitude(image)
    if window is not None:
        grad = apply_window(grad, window)
        image = apply_window(image, window)

    annulus_xcorr = cross_correlation(grad, annulus_fft, context)
    circle_xcorr = cross_correlation(image, circle_fft, context)

    return context.fft(annulus_xcorr * circle_xcorr)


def _parabola_offset(left, center, right):
    """Sub-pixel offset of the vertex of a parabola through 3 points."""
    denom = left - 2*center + right
    if denom >= 0:
        return 0.
    offset = 0.5 * (left - right) / denom
    return float(np.clip(offset, -0.5, 0.5))


def max_phase_corr(
        fft1,
        fft2,
        img_idx1=0,
        img_idx2=1,
        gauss_fft=None,
        tie_toler=1e-3,
        context=None,
):
    """Find the position of maximum phase correlation of 2 images from their
    Fourier transforms.

    Parameters
    ----------
    fft1, fft2 : 2D complex arrays
        The Fourier transforms of the two images.

    img_idx1, img_idx2 : ints
        The indices of the images in the stack. Passed through to the output.

    gauss_fft : 2D array or None
        Optional low-pass filter applied to the normalized cross-power
        spectrum. The correlation is normalized so that identical, shifted
        images score 1.
        Default: None

    tie_toler : scalar
        Local maxima within this fraction of the global maximum are
        considered ties. The tie closest to zero displacement is chosen.
        Default: 1e-3

    context : ExecutionContext or None
        The compute backend.

    Returns
    -------
    rel_pos : list
        [dx, dy, corr, img_idx1, img_idx2]: the sub-pixel shift of the second
        image relative to the first and the phase correlation at that shift.

    """

    if context is None:
        context = ExecutionContext(n_jobs=1, verbose=False)

    h, w = fft1.shape
    cross_power = context.multiply(fft2, np.conj(fft1))
    amp = np.abs(cross_power)
    cross_power = cross_power / np.maximum(amp, np.finfo(float).tiny)

    norm_ = 1.
    if gauss_fft is not None:
        cross_power = context.multiply(cross_power, gauss_fft)
        norm_ = np.real(np.mean(gauss_fft))

    corr = np.real(context.ifft(cross_power)) / norm_

    # Tie break among near-equal local maxima
    max_ = np.max(corr)
    local_max = maximum_filter(corr, size=3, mode='wrap') == corr
    ties = np.argwhere(local_max & (corr >= max_ - tie_toler * abs(max_)))
    if ties.shape[0] == 0:
        ties = context.argmax(corr)[None, :]
    disp = np.array([
        [(r + h//2) % h - h//2, (c + w//2) % w - w//2] for r, c in ties
    ])
    best = np.argmin(np.hypot(*disp.T))
    row, col = ties[best]
    dy, dx = disp[best].astype(float)

    # Sub-pixel refinement
    dy += _parabola_offset(
        corr[(row - 1) % h, col], corr[row, col], corr[(row + 1) % h, col]
    )
    dx += _parabola_offset(
        corr[row, (col - 1) % w], corr[row, col], corr[row, (col + 1) % w]
    )

    return [dx, dy, float(corr[row, col]), img_idx1, img_idx2]


def _as_image_list(images):
    """A single image or a sequence of images as a list of finite float
    arrays."""

    if np.ndim(images) == 2:
        images = [images]

    return [np.nan_to_num(np.asarray(image, dtype=float)) for image in images]


def freq_spectrum_1d(image, gauss_fft=None, context=None):
    """Radially binned power spectrum of an image.

    Frequencies are binned into rings of width 1 / min(h, w) cycles per
    pixel, up to the Nyquist frequency. The zero frequency is left out.

    Parameters
    ----------
    image : 2D array
        The image.

    gauss_fft : 2D array or None
        Optional low-pass filter multiplied with the image FFT.
        Default: None

    context : ExecutionContext or None
        The compute backend.

    Returns
    -------
    freqs : 1D array
        Central frequency of each bin, in cycles per pixel.

    power, power_sq : 1D arrays
        Mean power and mean squared power in each bin. NaN for empty bins.

    counts : 1D int array
        The number of frequencies in each bin.

    """

    if context is None:
        context = ExecutionContext(n_jobs=1, verbose=False)

    h, w = np.shape(image)
    side = min(h, w)
    length = side // 2

    image_fft = context.fft(np.nan_to_num(np.asarray(image, dtype=float)))
    if gauss_fft is not None:
        image_fft = context.multiply(image_fft, gauss_fft)
    power = np.abs(image_fft)**2

    f = np.hypot(np.fft.fftfreq(h)[:, None], np.fft.fftfreq(w)[None, :])
    bins = np.floor(f * side).astype(int)
    used = bins < length
    used[0, 0] = False

    counts = np.bincount(bins[used], minlength=length)
    sums = np.bincount(bins[used], weights=power[used], minlength=length)
    sq_sums = np.bincount(
        bins[used], weights=power[used]**2, minlength=length
    )
    with np.errstate(invalid='ignore', divide='ignore'):
        power_mean = np.where(counts > 0, sums / counts, np.nan)
        power_sq = np.where(counts > 0, sq_sums / counts, np.nan)

    freqs = (np.arange(length) + 0.5) / side

    return freqs, power_mean, power_sq, counts


def weighted_pearson_autocorr(data, err):
    """Lag 1 autocorrelation of a series using the Pearson correlation
    coefficient weighted by the errors of the elements.

    1 - value approximates half the Durbin-Watson statistic for long series.

    Parameters
    ----------
    data : 1D array
        The series.

    err : 1D array
        The error of each element. Each consecutive pair is weighted by the
        inverse of its summed variances. If all errors are 0, pairs are
        weighted equally.

    Returns
    -------
    r : scalar
        The autocorrelation. 0 if it is undefined.

    """

    data = np.asarray(data, dtype=float)
    err = np.asarray(err, dtype=float)

    x, y = data[:-1], data[1:]
    var = err[:-1]**2 + err[1:]**2
    valid = np.isfinite(x) & np.isfinite(y) & np.isfinite(var)
    if np.count_nonzero(valid) < 2:
        return 0.
    x, y, var = x[valid], y[valid], var[valid]

    if np.max(var) > 0:
        weights = 1 / np.maximum(var, np.max(var) * 1e-12)
    else:
        weights = np.ones(var.shape)

    dx = x - np.average(x, weights=weights)
    dy = y - np.average(y, weights=weights)
    denom = np.sqrt(np.sum(weights * dx**2) * np.sum(weights * dy**2))
    if denom == 0:
        return 0.

    return float(np.sum(weights * dx * dy) / denom)


def circ_size_ubound(
        images,
        gauss_fft=None,
        min_circ_size=4,
        max_num_imgs=10,
        context=None,
):
    """Estimate an upper bound for the diameter of the spots in a stack of
    diffraction patterns.

    Radial power spectra (freq_spectrum_1d) of the low-pass filtered images
    are averaged, adding one image at a time until the weighted
    autocorrelation of the averaged spectrum stops increasing or
    max_num_imgs images have been used. The bound is the inverse of the
    power weighted centroid frequency of the spectrum bins whose mean
    exceeds their standard error. A disk of diameter D gives a centroid near
    0.5 / D, so the bound is about twice the spot diameter.

    Parameters
    ----------
    images : 2D array or sequence of 2D arrays
        The diffraction patterns. All must have the same shape.

    gauss_fft : 2D array or None
        Low-pass filter applied to the image FFTs.
        Default: None

    min_circ_size : int
        Minimum returned bound.
        Default: 4

    max_num_imgs : int
        Maximum number of images to use.
        Default: 10

    context : ExecutionContext or None
        The compute backend.

    Returns
    -------
    ubound : int
        Upper bound for the spot diameter in pixels. At most the smaller
        image dimension.

    """

    if context is None:
        context = ExecutionContext(n_jobs=1, verbose=False)

    images = _as_image_list(images)
    side = min(images[0].shape)

    power_sum = power_sq_sum = counts = freqs = None
    prev_autocorr = None
    n = 0
    for image in images[:max(int(max_num_imgs), 1)]:
        freqs, power, power_sq, counts_k = freq_spectrum_1d(
            image, gauss_fft, context
        )
        if n == 0:
            power_sum, power_sq_sum = power, power_sq
            counts = counts_k
        else:
            power_sum = power_sum + power
            power_sq_sum = power_sq_sum + power_sq
        n += 1

        mean, err = _spectrum_stats(power_sum, power_sq_sum, counts, n)
        autocorr = weighted_pearson_autocorr(mean, err)
        if prev_autocorr is not None and autocorr <= prev_autocorr:
            break
        prev_autocorr = autocorr

    mean, err = _spectrum_stats(power_sum, power_sq_sum, counts, n)
    signif = np.isfinite(mean) & (mean > err)
    if np.sum(mean[signif]) <= 0:
        return int(side)

    f_c = np.sum(freqs[signif] * mean[signif]) / np.sum(mean[signif])

    return int(np.clip(np.ceil(1 / f_c), min_circ_size, side))


def _spectrum_stats(power_sum, power_sq_sum, counts, n):
    """Mean and standard error of each spectrum bin over n images."""
    mean = power_sum / n
    var = np.maximum(power_sq_sum / n - mean**2, 0)
    with np.errstate(invalid='ignore', divide='ignore'):
        err = np.sqrt(var / (n * counts))
    return mean, err


def get_annulus_param(
        images,
        min_rad,
        max_rad,
        init_thickness,
        max_contrib=10,
        gauss_sigma=1.,
        context=None,
):
    """Estimate the radius and thickness of annulus that best matches the
    spots in one or more diffraction patterns.

    The Scharr filtrate amplitude of each image is cross-correlated with
    annuli of radii separated by init_thickness, and each correlation maximum
    is scaled by the root of the annulus pixel count so different radii can
    be compared. The response curves of the images are averaged, adding one
    image at a time until the weighted autocorrelation of the averaged curve
    stops increasing or max_contrib images have been used. The best radius is
    then refined with refine_annulus_param on the images used.

    Parameters
    ----------
    images : 2D array or sequence of 2D arrays
        The diffraction patterns.

    min_rad, max_rad : ints
        The range of radii to try.

    init_thickness : int
        Thickness of the trial annuli and spacing of the trial radii.

    max_contrib : int
        Maximum number of images to use.
        Default: 10

    gauss_sigma : scalar
        Standard deviation of the Gaussian used to blur the annuli.
        Default: 1.

    context : ExecutionContext or None
        The compute backend.

    Returns
    -------
    radius, thickness : ints
        The refined annulus radius and thickness.

    """

    if context is None:
        context = ExecutionContext(n_jobs=1, verbose=False)

    images = _as_image_list(images)[:max(int(max_contrib), 1)]
    gauss_fft = extended_gauss(images[0].shape, gauss_sigma, context)
    radii = np.arange(min_rad, max(max_rad, min_rad) + 1,
                      max(int(init_thickness), 1))

    curves = []
    prev_autocorr = None
    for image in images:
        grad_fft = context.fft(gradient_amplitude(image))
        curves.append([
            _annulus_score(grad_fft, rad, init_thickness, gauss_fft, context)
            for rad in radii
        ])
        if len(curves) == 1:
            err = np.ones(len(radii))
        else:
            err = np.std(curves, axis=0, ddof=1) / np.sqrt(len(curves))
        autocorr = weighted_pearson_autocorr(np.mean(curves, axis=0), err)
        if prev_autocorr is not None and autocorr <= prev_autocorr:
            break
        prev_autocorr = autocorr

    rad = int(radii[np.argmax(np.mean(curves, axis=0))])

    return refine_annulus_param(
        images[:len(curves)],
        rad,
        range_=int(init_thickness),
        gauss_sigma=gauss_sigma,
        context=context,
    )


def _annulus_score(grad_fft, rad, thickness, gauss_fft, context):
    annulus_fft = create_annulus(grad_fft.shape, rad, thickness, context)
    xcorr = np.real(context.ifft(grad_fft * annulus_fft * gauss_fft))
    # Unit-sum filters give the mean gradient; scale to a matched response
    return np.max(xcorr) * np.sqrt(sum_annulus_px(rad, thickness))


def refine_annulus_param(
        images,
        rad,
        range_,
        gauss_sigma=1.,
        context=None,
):
    """Refine an annulus radius estimate and find the matching thickness.

    Scores are summed over the images.

    Parameters
    ----------
    images : 2D array or sequence of 2D arrays
        The diffraction patterns.

    rad : int
        Estimated spot radius.

    range_ : int
        The refined radius will be within this distance of rad.

    gauss_sigma : scalar
        Standard deviation of the Gaussian used to blur the annuli.
        Default: 1.

    context : ExecutionContext or None
        The compute backend.

    Returns
    -------
    radius, thickness : ints
        The refined annulus radius and thickness.

    """

    if context is None:
        context = ExecutionContext(n_jobs=1, verbose=False)

    images = _as_image_list(images)
    gauss_fft = extended_gauss(images[0].shape, gauss_sigma, context)
    grad_ffts = [context.fft(gradient_amplitude(image)) for image in images]

    def total_score(r, t):
        return sum(_annulus_score(g, r, t, gauss_fft, context)
                   for g in grad_ffts)

    radii = np.arange(max(rad - range_, 1), rad + range_ + 1)
    radius = int(radii[np.argmax([total_score(r, 1) for r in radii])])

    thicknesses = np.arange(1, max(radius, 2))
    thickness = int(thicknesses[np.argmax(
        [total_score(radius, t) for t in thicknesses]
    )])

    return radius, thickness
