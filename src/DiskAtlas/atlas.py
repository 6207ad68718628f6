"""DiskAtlas is a module for locating and measuring Bragg disks across
    stacks of misaligned electron diffraction patterns.
    Copyright (C) 2026  The DiskAtlas authors

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License, or
    (at your option) any later version.

    This program is distributed in the hope that it will be useful,
    but WITHOUT ANY WARRANTY; without even the implied warranty of
    MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
    GNU General Public License for more details.

    You should have received a copy of the GNU General Public License
    along with this program.  If not, see https://www.gnu.org/licenses
    """

import time
import warnings

import numpy as np
from numpy.linalg import norm

import pandas as pd

from DiskAtlas.system import ExecutionContext
from DiskAtlas.errors import STATUS_OK, STATUS_DISCONNECTED
from DiskAtlas.image import hann_2d
from DiskAtlas.fourier import (
    extended_gauss,
    create_annulus,
    create_circle,
    recur_conv,
    circ_size_ubound,
    get_annulus_param,
    refine_annulus_param,
)
from DiskAtlas.registration import (
    prime_images,
    pairwise_phase_corr,
    refine_rel_pos,
    align_and_avg,
    create_spot_maps,
)
from DiskAtlas.peakfit import get_spot_pos
from DiskAtlas.lattice import (
    get_lattice_vectors,
    find_other_spots,
    check_spot_pos,
)
from DiskAtlas.solver import NumericSolver
from DiskAtlas.ellipses import (
    ellipse_columns,
    ellipse_row,
    get_image_ellipses,
)
from DiskAtlas.symmetry import (
    symmetry_axes,
    repeating_max_loc,
    refine_mir_pos,
    avg_origin,
    average_intersection,
)

# %%


class DiffractionStack:
    """Object class for aligning a stack of diffraction patterns and locating
    and measuring the Bragg disks in it.

    Stages are run in order with the methods below (or all at once with
    run()). Each stage stores its results as attributes.

    Parameters
    ----------
    images : list of 2D arrays
        The diffraction patterns. All must have the same shape.

    radius : int or None
        Spot radius in pixels. If None, estimated from up to max_contrib
        images with get_annulus_param. The largest radius tried is half the
        spot diameter bound from circ_size_ubound.
        Default: None

    thickness : int or None
        Thickness of the annulus used to find spot edges. If None, estimated
        with refine_annulus_param.
        Default: None

    gauss_sigma : scalar
        Standard deviation of the Gaussian blurring the filters and low-pass
        filtering the phase correlations.
        Default: 1.

    max_contrib : int
        Maximum number of images used to estimate the spot size.
        Default: 10

    num_conv : int
        Number of recursive self-convolutions of the blurred annulus used to
        prime the images.
        Default: 1

    thresh_frac : scalar
        Proportion of the spot response kept when thresholding for spots.
        Default: 0.01

    inner_rad, outer_rad : scalars or None
        Radii of the annulus searched for each spot edge when fitting
        ellipses. If None, 0.5 and 1.5 times the spot radius.
        Default: None

    hann_window : bool
        Whether to apply a Hann window to the images before priming.
        Default: True

    max_sep : int or None
        Only correlate images at most this far apart in the stack. If None,
        all pairs.
        Default: None

    min_corr : scalar
        Pairs with phase correlation at or below this are ignored when
        refining the image positions.
        Default: 0.

    strict : bool
        If True, refine_positions raises DisconnectedStack when some images
        cannot be aligned. Otherwise they are skipped with a warning.
        Default: False

    context : ExecutionContext or None
        The compute backend. If None, a default ExecutionContext is created.
        Default: None

    solver : NumericSolver or None
        The numeric solver used for ellipse fitting. If None, a
        NumericSolver is created.
        Default: None

    Attributes
    ----------
    h, w : ints
        The height and width of the images.

    circ_ubound : int or None
        Upper bound for the spot diameter. None if the radius was given.

    rel_pos : pandas.DataFrame
        Pairwise relative positions.

    positions : pandas.DataFrame
        Refined image offsets relative to the first image.

    acc, num_overlap, origin :
        The aligned average, its overlap counts and the position of the first
        image's pixel (0, 0) in it.

    spot_pos : int array of shape (n, 2)
        Spot positions in the aligned average.

    lattice_vectors : int array of shape (k, 2)
        The spot lattice vectors found (k <= 2).

    ellipses : pandas.DataFrame
        One row per (image, spot).

    Methods
    -------
    run(symmetry=False, spot_maps=True):
        Run all stages in order.

    """

    def __init__(
            self,
            images,
            radius=None,
            thickness=None,
            gauss_sigma=1.,
            max_contrib=10,
            num_conv=1,
            thresh_frac=0.01,
            inner_rad=None,
            outer_rad=None,
            hann_window=True,
            max_sep=None,
            min_corr=0.,
            strict=False,
            context=None,
            solver=None,
    ):
        self.images = [np.asarray(image, dtype=float) for image in images]
        if len(self.images) == 0:
            raise ValueError('At least one image is needed.')
        shapes = {image.shape for image in self.images}
        if len(shapes) > 1:
            raise ValueError(f'Images must all have the same shape: {shapes}')
        self.h, self.w = self.images[0].shape

        self.context = ExecutionContext() if context is None else context
        self.solver = NumericSolver() if solver is None else solver

        self.gauss_sigma = gauss_sigma
        self.num_conv = num_conv
        self.thresh_frac = thresh_frac
        self.hann_window = hann_window
        self.max_sep = max_sep
        self.min_corr = min_corr
        self.strict = strict

        self.circ_ubound = None
        if radius is None:
            self.context.log('Estimating spot radius...')
            self.circ_ubound = circ_size_ubound(
                self.images,
                extended_gauss((self.h, self.w), gauss_sigma, self.context),
                min_circ_size=6,
                max_num_imgs=max_contrib,
                context=self.context,
            )
            radius, est_thickness = get_annulus_param(
                self.images,
                min_rad=2,
                max_rad=max(self.circ_ubound // 2, 3),
                init_thickness=2,
                max_contrib=max_contrib,
                gauss_sigma=gauss_sigma,
                context=self.context,
            )
            if thickness is None:
                thickness = est_thickness
        elif thickness is None:
            _, thickness = refine_annulus_param(
                self.images[0],
                int(radius),
                range_=0,
                gauss_sigma=gauss_sigma,
                context=self.context,
            )
        self.radius = radius
        self.thickness = thickness
        self.inner_rad = 0.5 * radius if inner_rad is None else inner_rad
        self.outer_rad = 1.5 * radius if outer_rad is None else outer_rad

        self.primed = None
        self.rel_pos = None
        self.positions = None
        self.acc = None
        self.num_overlap = None
        self.origin = None
        self.xcorr = None
        self.spot_thresh = None
        self.spot_pos = None
        self.lattice_vectors = None
        self.ellipses = None
        self.spot_maps = None
        self.symmetry_corr = None
        self.mirror_lines = None
        self.symmetry_origin = None

    def prime_images(self):
        """Build the frequency domain filters and prime the images for
        alignment."""

        shape = (self.h, self.w)
        self.gauss_fft = extended_gauss(shape, self.gauss_sigma, self.context)
        self.annulus_fft = recur_conv(
            create_annulus(shape, self.radius, self.thickness, self.context)
            * self.gauss_fft,
            self.num_conv,
        )
        self.circle_fft = create_circle(
            shape, self.radius, self.context
        ) * self.gauss_fft

        window = hann_2d(shape) if self.hann_window else None
        self.primed = prime_images(
            self.images,
            self.annulus_fft,
            self.circle_fft,
            window=window,
            context=self.context,
        )

    def get_relative_positions(self, tie_toler=1e-3):
        """Phase correlate the primed images pairwise.

        Parameters
        ----------
        tie_toler : scalar
            Tolerance for near-equal correlation maxima.
            Default: 1e-3

        """

        if self.primed is None:
            self.prime_images()

        self.rel_pos = pairwise_phase_corr(
            self.primed,
            gauss_fft=self.gauss_fft,
            max_sep=self.max_sep,
            tie_toler=tie_toler,
            context=self.context,
        )

    def refine_positions(self):
        """Find the image offsets relative to the first image from all the
        pairwise relative positions."""

        if self.rel_pos is None:
            self.get_relative_positions()

        self.context.log('Refining image positions...')
        self.positions = refine_rel_pos(
            self.rel_pos,
            len(self.images),
            min_corr=self.min_corr,
            strict=self.strict,
        )

    def align_and_average(self):
        """Average the aligned images."""

        if self.positions is None:
            self.refine_positions()

        self.context.log('Aligning and averaging images...')
        self.acc, self.num_overlap, self.origin = align_and_avg(
            self.images, self.positions
        )

    def find_spots(self, max_spots=None, hist_bins=1000):
        """Locate the spots in the aligned average.

        Spots found by thresholding the spot response are used to estimate
        the spot lattice. If a lattice is found, it is used to search for
        more spots and to remove or correct spots that are off the lattice.

        Parameters
        ----------
        max_spots : int or None
            Maximum number of spots found by thresholding.
            Default: None

        hist_bins : int
            Number of histogram bins used for thresholding.
            Default: 1000

        """

        if self.acc is None:
            self.align_and_average()

        self.context.log('Finding spots...')
        spot_pos, self.xcorr, self.spot_thresh = get_spot_pos(
            self.acc,
            self.radius,
            self.thickness,
            thresh_frac=self.thresh_frac,
            gauss_sigma=self.gauss_sigma,
            hist_bins=hist_bins,
            max_spots=max_spots,
            context=self.context,
        )

        self.lattice_vectors = get_lattice_vectors(spot_pos)
        if self.lattice_vectors.shape[0] > 0:
            self.context.log('Lattice vectors:', self.lattice_vectors.tolist())
            spot_pos = find_other_spots(
                self.xcorr,
                spot_pos,
                self.lattice_vectors,
                self.spot_thresh,
                self.radius,
            )
            spot_pos, _, _ = check_spot_pos(
                spot_pos,
                self.lattice_vectors,
                shape=self.acc.shape,
            )

        self.spot_pos = spot_pos
        self.context.log(f'{self.spot_pos.shape[0]} spots found')

    def image_spot_positions(self, image_idx):
        """Positions of the spots in one of the images.

        Parameters
        ----------
        image_idx : int
            The image index.

        Returns
        -------
        spot_xy : int array of shape (n, 2)
            The [x, y] spot positions in the image.

        """

        d = self.positions.loc[image_idx, ['dx_px', 'dy_px']].to_numpy(
            dtype=int
        )

        return self.spot_pos - self.origin + d

    def get_ellipses(self, keep_clusters=(0, 2), min_points=6):
        """Fit an ellipse to every spot in every image.

        Failures are recorded in the 'status' column and summarized in a
        warning.

        Parameters
        ----------
        keep_clusters : 2-tuple of ints
            Band of distance cluster ranks kept for the refined fits. See
            get_ellipse.
            Default: (0, 2)

        min_points : int
            Minimum number of pixels needed for each fit.
            Default: 6

        """

        if self.spot_pos is None:
            self.find_spots()

        t = [time.time()]
        self.context.log('Fitting ellipses...')

        connected = list(
            self.positions.index[self.positions['connected']]
        )
        results = self.context.parallel_map(
            get_image_ellipses,
            [(self.images[k],
              self.image_spot_positions(k),
              self.inner_rad,
              self.outer_rad,
              k,
              self.solver,
              keep_clusters,
              min_points)
             for k in connected],
            desc='Ellipses',
        )

        rows = [row for image_rows in results for row in image_rows]
        for k in self.positions.index[~self.positions['connected']]:
            rows += [
                ellipse_row(k, spot, STATUS_DISCONNECTED)
                for spot in range(self.spot_pos.shape[0])
            ]

        self.ellipses = pd.DataFrame(rows, columns=ellipse_columns)
        self.ellipses = self.ellipses.sort_values(
            ['image', 'spot']
        ).reset_index(drop=True)

        failed = self.ellipses[self.ellipses['status'] != STATUS_OK]
        if failed.shape[0] > 0:
            counts = failed['status'].value_counts().to_dict()
            warnings.warn(
                f'{failed.shape[0]} of {self.ellipses.shape[0]} spot '
                + f'ellipses could not be fitted: {counts}'
            )

        t += [time.time()]
        self.context.log(f'Ellipse fitting: {(t[-1]-t[-2]) :.{2}f} sec')

    def get_spot_maps(self, radius=None):
        """Map the region of k space covered by each spot across the stack.

        Parameters
        ----------
        radius : int or None
            Radius of the region extracted around each spot. If None, the
            spot radius.
            Default: None

        """

        if self.spot_pos is None:
            self.find_spots()
        if radius is None:
            radius = self.radius

        self.context.log('Creating spot maps...')
        self.spot_maps = create_spot_maps(
            self.images, self.spot_pos, self.positions, self.origin, radius
        )

    def estimate_symmetry_origin(
            self,
            origin=None,
            num_angles=120,
            target_size=0,
            range_=None,
            pos_mir_sym=(2, 4, 6, 8),
    ):
        """Estimate the center of symmetry of the aligned average from its
        mirror lines.

        Parameters
        ----------
        origin : 2-list or None
            Initial [x, y] estimate in the aligned average. If None, the spot
            closest to the center of the average (or the center itself if no
            spots have been found).
            Default: None

        num_angles : int
            Number of mirror line angles scored.
            Default: 120

        target_size : int
            Minimum size of the downsampled average used for scoring. 0 for
            no downsampling.
            Default: 0

        range_ : int or None
            Maximum perpendicular shift of each line when refining. If None,
            the spot radius.
            Default: None

        pos_mir_sym : tuple of ints
            Candidate numbers of mirror lines.
            Default: (2, 4, 6, 8)

        Returns
        -------
        origin_avg : array of shape (2,)
            Mean of the refined line positions.

        origin_intersect : array of shape (2,)
            Mean of the pairwise line intersections. NaN if the lines are
            parallel.

        """

        if self.acc is None:
            self.align_and_average()

        h, w = self.acc.shape
        if origin is None:
            center = np.array([w // 2, h // 2])
            if self.spot_pos is not None and self.spot_pos.shape[0] > 0:
                origin = self.spot_pos[
                    np.argmin(norm(self.spot_pos - center, axis=1))
                ]
            else:
                origin = center
        if range_ is None:
            range_ = int(np.ceil(self.radius))

        self.context.log('Finding mirror lines...')
        self.symmetry_corr = symmetry_axes(
            self.acc, origin[0], origin[1], num_angles, target_size
        )
        max_pos = repeating_max_loc(
            self.symmetry_corr, num_angles, pos_mir_sym
        )
        self.mirror_lines = refine_mir_pos(
            self.acc, max_pos, num_angles, origin[0], origin[1], range_
        )

        origin_avg = avg_origin(self.mirror_lines)
        try:
            origin_intersect = average_intersection(self.mirror_lines)
        except ValueError:
            warnings.warn('Mirror lines are parallel: no intersection.')
            origin_intersect = np.array([np.nan, np.nan])

        self.symmetry_origin = (origin_avg, origin_intersect)

        return origin_avg, origin_intersect

    def run(self, symmetry=False, spot_maps=True):
        """Run all stages in order.

        Parameters
        ----------
        symmetry : bool
            Whether to also estimate the center of symmetry.
            Default: False

        spot_maps : bool
            Whether to also create the spot maps.
            Default: True

        Returns
        -------
        ellipses : pandas.DataFrame
            The ellipse table.

        """

        t = [time.time()]
        self.prime_images()
        self.get_relative_positions()
        self.refine_positions()
        self.align_and_average()
        self.find_spots()
        if spot_maps:
            self.get_spot_maps()
        if symmetry:
            self.estimate_symmetry_origin()
        self.get_ellipses()

        t += [time.time()]
        self.context.log(f'Total: {(t[-1]-t[-2]) :.{2}f} sec')

        return self.ellipses
