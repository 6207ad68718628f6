import numpy as np
import pytest

from DiskAtlas.system import ExecutionContext
from DiskAtlas.solver import NumericSolver

SHIFTS = [(0, 0), (2, -1), (-3, 2), (1, 3), (-2, -2)]
SPOT_RADIUS = 8
SPOT_CENTER = (32, 32)


def render_disk(shape, center, radius, edge=0.7, amplitude=1.):
    """A disk with a sigmoid edge."""
    y, x = np.indices(shape)
    r = np.hypot(x - center[0], y - center[1])
    return amplitude / (1 + np.exp((r - radius) / edge))


def render_spots(shape, centers, sigma=2.):
    """Gaussian spots."""
    y, x = np.indices(shape)
    image = np.zeros(shape)
    for x0, y0 in centers:
        image += np.exp(-((x - x0)**2 + (y - y0)**2) / (2 * sigma**2))
    return image


def conic_from_params(x0, y0, a, b, angle):
    """Conic coefficients of an ellipse with semi-axis a along 'angle'."""
    s, c = np.sin(angle), np.cos(angle)
    A = a**2 * s**2 + b**2 * c**2
    B = 2 * (b**2 - a**2) * s * c
    C = a**2 * c**2 + b**2 * s**2
    D = -2*A*x0 - B*y0
    E = -B*x0 - 2*C*y0
    F = A*x0**2 + B*x0*y0 + C*y0**2 - a**2 * b**2
    conic = np.array([A, B, C, D, E, F])
    return conic / np.linalg.norm(conic)


def ellipse_points(x0, y0, a, b, angle, n=60):
    t = np.linspace(0, 2*np.pi, n, endpoint=False)
    u = np.array([np.cos(angle), np.sin(angle)])
    v = np.array([-np.sin(angle), np.cos(angle)])
    return (np.array([x0, y0])
            + a * np.cos(t)[:, None] * u
            + b * np.sin(t)[:, None] * v)


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def context():
    return ExecutionContext(n_jobs=1, verbose=False)


@pytest.fixture
def solver():
    return NumericSolver()


@pytest.fixture
def disk_image():
    return render_disk((64, 64), SPOT_CENTER, SPOT_RADIUS)


@pytest.fixture
def disk_stack(rng):
    """5 noisy copies of one disk image shifted by SHIFTS."""
    base = render_disk((64, 64), SPOT_CENTER, SPOT_RADIUS)
    images = [
        np.roll(base, (dy, dx), axis=(0, 1))
        + rng.normal(0, 0.02, base.shape)
        for dx, dy in SHIFTS
    ]
    return images, np.array(SHIFTS)
