import numpy as np
from statsmodels.stats.multitest import multipletests
from pyMethDMR.errors import EmptyNullPoolError

def empirical_pvalues(stats, null_pool):
    """
    Two-sided empirical p-values of region statistics against the pooled permutation null.

    Parameters:
        stats (1D array): Observed region statistics.
        null_pool (NullPool or 1D array): Permutation statistics; only their magnitude is used.

    Returns:
        numpy array: (1 + number of null values with magnitude >= |stat|) / (1 + size of the null).
        Non-finite statistics get a p-value of 1.

    Raises:
        EmptyNullPoolError: If the null holds no statistics.
    """
    null = null_pool.values if hasattr(null_pool, 'values') else np.asarray(null_pool, dtype='float64')
    null = np.sort(np.abs(null[np.isfinite(null)]))
    if null.size == 0:
        raise EmptyNullPoolError("The permutation null is empty: no candidate regions were found under any permutation, "
                                 "so significance cannot be calibrated. Try a lower cutoff or min_num_region.")
    stats = np.abs(np.asarray(stats, dtype='float64'))
    exceed = null.size - np.searchsorted(null, stats, side='left')
    pvals = (1 + exceed) / (1 + null.size)
    pvals[~np.isfinite(stats)] = 1.0
    return pvals

def bh_adjust(pvals):
    """Benjamini-Hochberg q-values."""
    pvals = np.asarray(pvals, dtype='float64')
    if pvals.size == 0:
        return pvals.copy()
    return multipletests(pvals, method='fdr_bh')[1]
