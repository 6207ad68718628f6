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
    along with this program.  If not, see https://www.gnu.org/licenses"""


__version__ = "0.1.0"

# General modules
from DiskAtlas.errors import *
from DiskAtlas.image import *
from DiskAtlas.fourier import *
from DiskAtlas.registration import *
from DiskAtlas.peakfit import *
from DiskAtlas.lattice import *
from DiskAtlas.symmetry import *

# Class modules
from DiskAtlas.system import ExecutionContext
from DiskAtlas.solver import NumericSolver
from DiskAtlas.ellipses import (
    Ellipse,
    ellipse_points_from_conic,
    shift_conic,
    get_ellipse,
)
from DiskAtlas.atlas import DiffractionStack
