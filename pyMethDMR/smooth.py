import numpy as np
from numba import njit
from pyMethDMR.type_annotations import SmoothedTrack

def arcsine_transform(meth, coverage, c0=0.1):
    """
    Variance stabilising transform of methylation proportions.

    Parameters:
        meth (numpy array): Methylated read counts.
        coverage (numpy array): Total read counts, same shape as meth.
        c0 (float, default: 0.1): Pseudo count keeping fully (un)methylated sites away from the bounds.

    Returns:
        numpy array: arcsin(2p - 1) of the shrunken proportion p, with variance close to 1/coverage.
    """
    return np.arcsin(2*((meth + c0)/(coverage + 2*c0)) - 1)

def site_differences(meth, coverage, X, test_idx=1, c0=0.1):
    """
    Estimate the per-site condition effect by weighted least squares on arcsine transformed proportions.

    Parameters:
        meth (2D numpy array): Methylated reads at each cpg (rows) for each sample (columns).
        coverage (2D numpy array): Total reads at each cpg (rows) for each sample (columns).
        X (2D numpy array): Sample design matrix (samples x parameters) including intercept and condition indicator.
        test_idx (int, default: 1): Column of X holding the condition indicator.
        c0 (float, default: 0.1): Pseudo count for the arcsine transform.

    Returns:
        tuple: Condition coefficient of each site and its precision (inverse sampling variance).
    """
    Z = arcsine_transform(meth, coverage, c0)
    XtWX = np.einsum('sj,jp,jq->spq', coverage, X, X)
    XtWz = np.einsum('sj,jp,sj->sp', coverage, X, Z)
    beta = np.linalg.solve(XtWX, XtWz[..., None])[..., 0]
    var_beta = np.linalg.inv(XtWX)[:, test_idx, test_idx]
    return beta[:, test_idx], 1/var_beta

@njit
def _nearest_window(pos, i, k):
    """Bounds [left, right) of the k sites nearest to site i, contiguous in genomic order."""
    n = pos.shape[0]
    left = i
    right = i
    while right - left + 1 < k:
        if left == 0:
            right += 1
        elif right == n - 1:
            left -= 1
        elif pos[i] - pos[left - 1] <= pos[right + 1] - pos[i]:
            left -= 1
        else:
            right += 1
    return left, right + 1

@njit
def _local_linear(pos, y, w, bandwidth, min_in_span):
    n = pos.shape[0]
    fitted = np.empty(n)
    smoothed_w = np.empty(n)
    for i in range(n):
        left = np.searchsorted(pos, pos[i] - bandwidth, side='right')
        right = np.searchsorted(pos, pos[i] + bandwidth, side='left')
        h = bandwidth
        if right - left < min_in_span:
            left, right = _nearest_window(pos, i, min_in_span)
            h = max(pos[i] - pos[left], pos[right - 1] - pos[i])
            # stretch so the outermost site keeps a positive kernel weight
            h = h * (1.0 + 1e-6) + 1e-12
        s0 = 0.0
        s1 = 0.0
        s2 = 0.0
        t0 = 0.0
        t1 = 0.0
        k_sum = 0.0
        kw_sum = 0.0
        for j in range(left, right):
            dx = (pos[j] - pos[i]) / h
            d = abs(dx)
            if d >= 1.0:
                continue
            kern = (1.0 - d**3)**3
            wj = kern * w[j]
            s0 += wj
            s1 += wj * dx
            s2 += wj * dx * dx
            t0 += wj * y[j]
            t1 += wj * dx * y[j]
            k_sum += kern
            kw_sum += kern * w[j]
        det = s0 * s2 - s1 * s1
        if det > 1e-10 * s0 * s2:
            fitted[i] = (s2 * t0 - s1 * t1) / det
        else:
            fitted[i] = t0 / s0
        smoothed_w[i] = kw_sum / k_sum
    return fitted, smoothed_w

def smooth_chromosome(genomic_positions, diff, weights, bandwidth=1000, min_in_span=30):
    """
    Smooth a per-site signal along one chromosome by kernel weighted local linear regression.

    Each site is fitted from the sites within bandwidth base pairs, weighted by a tricube kernel in genomic
    distance times the site precision. Where fewer than min_in_span sites lie within the bandwidth the window is
    widened to the min_in_span nearest sites, so no site is left unsmoothed.

    Parameters:
        genomic_positions (1D numpy array): Sorted positions of the sites on the chromosome.
        diff (1D numpy array): Per-site signal to smooth.
        weights (1D numpy array): Positive precision weight of each site.
        bandwidth (int, default: 1000): Kernel half width in base pairs.
        min_in_span (int, default: 30): Minimum number of sites in a window.

    Returns:
        tuple or None: Smoothed signal and kernel averaged precision, or None when the chromosome holds fewer than
        min_in_span sites.
    """
    pos = np.ascontiguousarray(genomic_positions, dtype=np.float64)
    if pos.shape[0] < min_in_span:
        return None
    return _local_linear(pos, np.ascontiguousarray(diff, dtype=np.float64),
                         np.ascontiguousarray(weights, dtype=np.float64), float(bandwidth), int(min_in_span))

def smooth_differences(chrom, meth, coverage, genomic_positions, X, config, test_idx=1):
    """
    Compute the smoothed condition difference track of one chromosome.

    Returns:
        SmoothedTrack or None: None when the chromosome is too short to smooth.
    """
    raw, precision = site_differences(meth, coverage, X, test_idx, config.pseudo_count)
    res = smooth_chromosome(genomic_positions, raw, precision, config.bandwidth, config.min_in_span)
    if res is None:
        return None
    smoothed, smoothed_weights = res
    return SmoothedTrack(chrom, np.asarray(genomic_positions), raw, precision, smoothed, smoothed_weights)
