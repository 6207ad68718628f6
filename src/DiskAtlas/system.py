import psutil
from tqdm import tqdm

from joblib import Parallel, delayed

import numpy as np
from scipy.fft import fft2, ifft2

# %%


class ExecutionContext:
    """Compute backend shared by every stage of the pipeline.

    Holds the FFT settings and the parallel processing policy. Create one at
    the start of a run and pass it to the functions that need it.

    Parameters
    ----------
    n_jobs : int or None
        Number of parallel workers for map-style stages. If None, uses the
        number of logical CPUs. 1 runs everything serially in this process.
        Default: None

    fft_workers : int or None
        Number of threads used by scipy.fft for each transform. If None,
        scipy's default is used.
        Default: None

    verbose : bool
        Whether to print progress messages and show progress bars.
        Default: True

    """

    def __init__(self, n_jobs=None, fft_workers=None, verbose=True):
        if n_jobs is None:
            n_jobs = psutil.cpu_count(logical=True)
        self.n_jobs = max(int(n_jobs), 1)
        self.fft_workers = fft_workers
        self.verbose = verbose

    def fft(self, image):
        """2D forward Fourier transform over the last two axes."""
        return fft2(image, workers=self.fft_workers)

    def ifft(self, freq):
        """2D inverse Fourier transform over the last two axes."""
        return ifft2(freq, workers=self.fft_workers)

    @staticmethod
    def multiply(freq1, freq2):
        return np.multiply(freq1, freq2)

    @staticmethod
    def argmax(array):
        """Location of the global maximum as [row, col]."""
        return np.array(np.unravel_index(np.nanargmax(array), array.shape))

    def log(self, *args):
        if self.verbose:
            print(*args)

    def parallel_map(self, func, args_packed, desc=None):
        """Apply a function to each tuple of arguments.

        Parameters
        ----------
        func : callable
            The function. Called as func(*args) for each element.

        args_packed : list of tuples
            The arguments for each call.

        desc : str or None
            Progress bar label.

        Returns
        -------
        results : list
            The results in the same order as args_packed.

        """

        args_iter = tqdm(args_packed, desc=desc, disable=not self.verbose)

        if self.n_jobs > 1 and len(args_packed) > 1:
            results = Parallel(n_jobs=self.n_jobs)(
                delayed(func)(*args) for args in args_iter
            )
        else:
            results = [func(*args) for args in args_iter]

        return results
