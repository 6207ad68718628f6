import numpy as np
import pytest

from scipy.ndimage import gaussian_filter

from DiskAtlas.fourier import (
    extended_gauss,
    create_annulus,
    create_circle,
    sum_annulus_px,
    recur_conv,
    cross_correlation,
    prime_image,
    max_phase_corr,
    get_annulus_param,
    freq_spectrum_1d,
    weighted_pearson_autocorr,
    circ_size_ubound,
)

from conftest import render_disk


def test_filters_have_unit_sum(context):
    shape = (32, 48)
    for filt in [
        extended_gauss(shape, 2., context),
        create_annulus(shape, 6, 2, context),
        create_circle(shape, 5, context),
    ]:
        assert filt.shape == shape
        assert abs(filt[0, 0] - 1) < 1e-9


def test_gauss_filter_does_not_shift_image(context):
    image = np.zeros((32, 32))
    image[10, 20] = 1
    blurred = cross_correlation(image, extended_gauss((32, 32), 2., context))
    row, col = np.unravel_index(np.argmax(blurred), blurred.shape)
    assert (row, col) == (10, 20)
    assert np.sum(blurred) == pytest.approx(1.)


def test_recur_conv():
    filt = np.array([[0.5, 2.], [1j, -1.]])
    assert np.allclose(recur_conv(filt, 0), filt)
    assert np.allclose(recur_conv(filt, 2), filt**4)


def test_sum_annulus_px_grows_with_radius():
    assert sum_annulus_px(10, 2) > sum_annulus_px(5, 2)
    assert sum_annulus_px(5, 4) > sum_annulus_px(5, 2)


def test_max_phase_corr_recovers_shift(rng, context):
    image = gaussian_filter(rng.normal(size=(64, 64)), 2)
    shifted = np.roll(image, (3, -5), axis=(0, 1))
    dx, dy, corr, i, j = max_phase_corr(
        context.fft(image), context.fft(shifted), 0, 1, context=context
    )
    assert dx == pytest.approx(-5)
    assert dy == pytest.approx(3)
    assert corr == pytest.approx(1.)
    assert (i, j) == (0, 1)


def test_max_phase_corr_lowpass_normalization(rng, context):
    image = rng.normal(size=(48, 48))
    shifted = np.roll(image, (-7, 4), axis=(0, 1))
    gauss_fft = extended_gauss(image.shape, 1., context)
    dx, dy, corr, _, _ = max_phase_corr(
        context.fft(image),
        context.fft(shifted),
        gauss_fft=gauss_fft,
        context=context,
    )
    assert dx == pytest.approx(4, abs=1e-6)
    assert dy == pytest.approx(-7, abs=1e-6)
    assert corr == pytest.approx(1.)


def test_max_phase_corr_of_primed_disks(context):
    shape = (64, 64)
    image1 = render_disk(shape, (30, 33), 8)
    image2 = render_disk(shape, (33, 31), 8)
    annulus_fft = create_annulus(shape, 8, 2, context)
    circle_fft = create_circle(shape, 8, context)
    primed1 = prime_image(image1, annulus_fft, circle_fft, context=context)
    primed2 = prime_image(image2, annulus_fft, circle_fft, context=context)
    assert np.iscomplexobj(primed1)

    gauss_fft = extended_gauss(shape, 1., context)
    dx, dy, _, _, _ = max_phase_corr(
        primed1, primed2, gauss_fft=gauss_fft, context=context
    )
    assert dx == pytest.approx(3, abs=0.5)
    assert dy == pytest.approx(-2, abs=0.5)


def two_peak_ffts(context, shifts, weights):
    """FFTs of a delta at the origin and of weighted deltas at the x shifts."""
    ref = np.zeros((32, 32))
    ref[0, 0] = 1.
    moved = np.zeros((32, 32))
    for dx, weight in zip(shifts, weights):
        moved[0, dx % 32] += weight
    return context.fft(ref), context.fft(moved)


@pytest.mark.parametrize('shifts, expected', [
    ((2, 7), 2),
    ((4, -1), -1),
])
def test_max_phase_corr_equal_peaks_choose_smallest_shift(
        context, shifts, expected):
    fft1, fft2 = two_peak_ffts(context, shifts, (1., 1.))
    dx, dy, corr, _, _ = max_phase_corr(fft1, fft2, context=context)
    assert round(dx) == expected
    assert round(dy) == 0
    assert corr > 0


def test_max_phase_corr_stronger_far_peak_wins(context):
    fft1, fft2 = two_peak_ffts(context, (2, 7), (1., 3.))
    dx, dy, _, _, _ = max_phase_corr(fft1, fft2, context=context)
    assert round(dx) == 7
    assert round(dy) == 0


def test_get_annulus_param_finds_disk_radius(disk_image, context):
    radius, thickness = get_annulus_param(
        disk_image, 4, 16, 2, context=context
    )
    assert abs(radius - 8) <= 1
    assert 1 <= thickness < radius


def test_get_annulus_param_from_stack(disk_stack, context):
    images, _ = disk_stack
    radius, thickness = get_annulus_param(
        images, 4, 16, 2, max_contrib=3, context=context
    )
    assert abs(radius - 8) <= 1
    assert 1 <= thickness < radius


def test_freq_spectrum_1d_peaks_at_cosine_frequency(context):
    _, x = np.indices((64, 64))
    freqs, power, power_sq, counts = freq_spectrum_1d(
        np.cos(2 * np.pi * x / 8), context=context
    )
    assert freqs.shape == (32,)
    assert counts[0] == 0
    assert np.isnan(power[0])
    assert np.nanargmax(power) == 8
    assert freqs[8] == pytest.approx(8.5 / 64)
    used = counts > 0
    assert np.all(power_sq[used] >= power[used]**2 * (1 - 1e-9))


def test_freq_spectrum_1d_ignores_zero_frequency(context):
    _, power, _, counts = freq_spectrum_1d(np.full((16, 16), 5.),
                                           context=context)
    assert power[counts > 0] == pytest.approx(np.zeros(np.sum(counts > 0)))


def test_weighted_pearson_autocorr():
    ramp = np.arange(10.)
    assert weighted_pearson_autocorr(ramp, np.ones(10)) == pytest.approx(1.)
    alternating = np.array([1., -1.] * 5)
    assert weighted_pearson_autocorr(alternating, np.zeros(10)) \
        == pytest.approx(-1.)
    assert weighted_pearson_autocorr(np.ones(10), np.ones(10)) == 0.
    assert weighted_pearson_autocorr([1., 2.], [1., 1.]) == 0.


def test_weighted_pearson_autocorr_downweights_noisy_pairs():
    data = np.array([0., 1., 2., 3., 4., 5., -20., 7.])
    err = np.array([.1, .1, .1, .1, .1, .1, 1e3, .1])
    assert weighted_pearson_autocorr(data, err) == pytest.approx(1., abs=1e-3)
    assert weighted_pearson_autocorr(data, np.full(8, .1)) < 0.5


def test_circ_size_ubound_bounds_disk_diameter(context):
    gauss_fft = extended_gauss((64, 64), 1., context)
    big = circ_size_ubound(
        [render_disk((64, 64), (32, 32), 8)] * 3, gauss_fft, context=context
    )
    small = circ_size_ubound(
        render_disk((64, 64), (32, 32), 3), gauss_fft, context=context
    )
    assert 16 <= big <= 64
    assert small < big


def test_circ_size_ubound_limits(context):
    image = render_disk((64, 64), (32, 32), 3)
    assert circ_size_ubound(image, min_circ_size=60, context=context) >= 60
    assert circ_size_ubound(np.zeros((32, 48)), context=context) == 32
