import numpy as np
import pytest

from DiskAtlas.errors import RegionEmpty
from DiskAtlas.image import (
    gradient_amplitude,
    annular_mask,
    get_mask_region,
    extract_masked_region,
    hann_2d,
    apply_window,
    threshold_proportion,
    pixel_dists,
    disk_footprint,
)


def test_pixel_dists():
    r = pixel_dists((3, 5), [4, 0])
    assert r.shape == (3, 5)
    assert r[0, 4] == 0.
    assert r[2, 0] == pytest.approx(np.hypot(4, 2))


def test_disk_footprint():
    footprint = disk_footprint(2.5)
    assert footprint.shape == (5, 5)
    assert footprint.dtype == bool
    assert footprint[2].all() and footprint[:, 2].all()
    assert not footprint[0, 0]
    assert footprint[1, 0]
    assert np.array_equal(footprint, footprint.T)


def test_gradient_amplitude_of_ramp():
    y, x = np.indices((20, 20))
    grad = gradient_amplitude(0.5 * x + 0. * y)
    # Scharr weights sum to 32 across the kernel
    assert grad[5:15, 5:15] == pytest.approx(np.full((10, 10), 16.))
    assert np.all(gradient_amplitude(np.ones((8, 8))) == 0)


def test_annular_mask_is_symmetric_under_90_degree_rotation():
    for size in [7, 21, 51]:
        mask = annular_mask(size, size / 6, size / 3)
        assert np.array_equal(mask, np.rot90(mask))
        assert np.array_equal(mask, mask.T)


def test_annular_mask_area_scales_with_ring_area():
    for size in [51, 101, 201]:
        inner, outer = 0.2 * size, 0.4 * size
        ring_area = np.pi * (outer**2 - inner**2)
        count = np.count_nonzero(annular_mask(size, inner, outer))
        assert count == pytest.approx(ring_area, rel=0.05)


def test_annular_mask_rejects_even_size():
    with pytest.raises(ValueError):
        annular_mask(10, 2, 4)


def test_get_mask_region_clips_at_edges():
    mask = np.ones((5, 5))
    img_slice, clipped = get_mask_region((10, 10), mask, [-2, 7])
    assert clipped.shape == (3, 3)
    assert img_slice == (slice(7, 10), slice(0, 3))


def test_get_mask_region_off_image_raises():
    with pytest.raises(RegionEmpty):
        get_mask_region((10, 10), np.ones((3, 3)), [20, 0])
    with pytest.raises(RegionEmpty):
        get_mask_region((10, 10), np.ones((3, 3)), [-3, -3])


def test_extract_masked_region_returns_image_coordinates():
    image = np.arange(100, dtype=float).reshape(10, 10)
    mask = annular_mask(5, 1, 2)
    values, xy = extract_masked_region(image, mask, [-1, 3], return_xy=True)
    assert values.shape[0] == xy.shape[0]
    assert np.all(xy[:, 0] >= 0)
    assert np.array_equal(values, image[xy[:, 1], xy[:, 0]])


def test_hann_2d():
    hann = hann_2d(32)
    assert hann.shape == (32, 32)
    assert hann[16, 16] == pytest.approx(1.)
    assert hann[0, 0] == 0
    assert hann_2d((16, 32)).shape == (16, 32)


def test_apply_window_shape_mismatch():
    with pytest.raises(ValueError):
        apply_window(np.ones((4, 4)), np.ones((4, 5)))


def test_threshold_proportion_within_one_bin(rng):
    image = rng.uniform(0, 1, (100, 100))
    hist_bins = 1000
    for frac in [0.01, 0.1, 0.5]:
        thresh, mask, num = threshold_proportion(image, frac, hist_bins)
        assert num == image.size
        bin_count = np.max(np.histogram(image, bins=hist_bins)[0])
        assert abs(np.count_nonzero(mask) - frac * num) <= bin_count + 1
        assert np.all(image[mask] >= thresh)


def test_threshold_proportion_ignores_nan_and_zeros(rng):
    image = rng.uniform(1, 2, (50, 50))
    image[:10] = np.nan
    image[10:20] = 0
    thresh, mask, num = threshold_proportion(image, 0.2, non_zero=True)
    assert num == 30 * 50
    assert not np.any(mask[:20])
    assert np.count_nonzero(mask) / num == pytest.approx(0.2, abs=0.01)


def test_threshold_proportion_flat_image():
    thresh, mask, num = threshold_proportion(np.full((5, 5), 3.), 0.1)
    assert thresh == 3.
    assert np.all(mask)
    assert num == 25
