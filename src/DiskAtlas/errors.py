"""Exceptions raised by DiskAtlas and the per-unit status codes recorded in
result tables when a spot, pair or image is skipped."""

# %%
"""Status codes"""
STATUS_OK = 'ok'
STATUS_NOT_ELLIPSE = 'not_ellipse'
STATUS_REGION_EMPTY = 'region_empty'
STATUS_INSUFFICIENT_POINTS = 'insufficient_points'
STATUS_SOLVER_FAILURE = 'solver_failure'
STATUS_DISCONNECTED = 'disconnected'

# %%


class DiskAtlasError(Exception):
    """Base class for recoverable, per-unit failures."""
    status = None


class RegionEmpty(DiskAtlasError):
    """A mask or region lies entirely outside the image bounds."""
    status = STATUS_REGION_EMPTY


class DisconnectedStack(DiskAtlasError):
    """Some images are not connected to the reference image by the pairwise
    registration graph.

    Parameters
    ----------
    indices : list of ints
        The indices of the images that could not be aligned.

    """
    status = STATUS_DISCONNECTED

    def __init__(self, indices, message=None):
        self.indices = list(indices)
        if message is None:
            message = (
                'Images not connected to the reference image: '
                + f'{self.indices}. Add pairs linking them or lower '
                + '"min_corr".'
            )
        super().__init__(message)


class InsufficientPoints(DiskAtlasError):
    """Too few masked pixels remain for a stable conic fit."""
    status = STATUS_INSUFFICIENT_POINTS


class SolverFailure(DiskAtlasError):
    """The numeric solver did not converge or returned invalid output."""
    status = STATUS_SOLVER_FAILURE
