import pytest
import numpy as np
import statsmodels.api as sm
from pyMethDMR.smooth import arcsine_transform, site_differences, smooth_chromosome, smooth_differences
from pyMethDMR.config import DMRConfig

np.random.seed(12)

@pytest.fixture
def design():
    labels = np.array([0, 0, 0, 1, 1, 1])
    return np.column_stack([np.ones(6), labels])

@pytest.fixture
def chromosome():
    n_cpg = 120
    positions = np.cumsum(np.random.randint(20, 80, size=n_cpg))
    coverage = np.random.randint(10, 40, size=(n_cpg, 6)).astype(float)
    meth = np.random.binomial(coverage.astype(int), 0.5).astype(float)
    return meth, coverage, positions

def test_arcsine_transform():
    """
    Test that half methylation maps to zero and full (un)methylation stays inside the bounds
    """
    assert arcsine_transform(np.array([5.]), np.array([10.]))[0] == pytest.approx(0)
    full = arcsine_transform(np.array([20.]), np.array([20.]))[0]
    none = arcsine_transform(np.array([0.]), np.array([20.]))[0]
    assert 0 < full < np.pi/2
    assert full == pytest.approx(-none)

def test_site_differences_match_wls(chromosome, design):
    """
    Test that per-site coefficients agree with a weighted least squares fit of each site
    """
    meth, coverage, positions = chromosome
    beta, precision = site_differences(meth, coverage, design)
    z = arcsine_transform(meth, coverage)
    for site in [0, 17, 99]:
        fit = sm.WLS(z[site], design, weights=coverage[site]).fit()
        assert beta[site] == pytest.approx(fit.params[1])
        var = np.linalg.inv(design.T @ (coverage[site][:, None] * design))[1, 1]
        assert precision[site] == pytest.approx(1/var)

def test_linear_trend_reproduced():
    """
    Test that a linear signal is reproduced exactly, including at chromosome ends
    """
    positions = np.arange(0, 10000, 50)
    signal = 0.0001 * positions - 0.3
    weights = np.random.uniform(5, 50, size=positions.size)
    smoothed, _ = smooth_chromosome(positions, signal, weights, bandwidth=1000, min_in_span=5)
    assert np.allclose(smoothed, signal, atol=1e-8)

def test_sparse_sites_use_nearest_window():
    """
    Test that sites with too few neighbours inside the bandwidth are still smoothed
    """
    positions = np.arange(0, 200000, 5000)
    signal = 0.00001 * positions
    weights = np.ones(positions.size)
    smoothed, smoothed_w = smooth_chromosome(positions, signal, weights, bandwidth=1000, min_in_span=5)
    assert np.isfinite(smoothed).all()
    assert np.allclose(smoothed, signal, atol=1e-8)
    assert np.allclose(smoothed_w, 1)

def test_constant_signal():
    positions = np.cumsum(np.random.randint(1, 100, size=80))
    smoothed, _ = smooth_chromosome(positions, np.repeat(0.25, 80), np.random.uniform(1, 10, size=80),
                                    bandwidth=500, min_in_span=10)
    assert np.allclose(smoothed, 0.25)

def test_short_chromosome_not_smoothed(chromosome, design):
    meth, coverage, positions = chromosome
    config = DMRConfig(min_in_span=30)
    assert smooth_differences('chr1', meth[:29], coverage[:29], positions[:29], design, config) is None
    assert smooth_differences('chr1', meth[:30], coverage[:30], positions[:30], design, config) is not None

def test_smoothing_deterministic(chromosome, design):
    meth, coverage, positions = chromosome
    config = DMRConfig(min_in_span=10, bandwidth=500)
    first = smooth_differences('chr1', meth, coverage, positions, design, config)
    second = smooth_differences('chr1', meth, coverage, positions, design, config)
    assert np.array_equal(first.smoothed, second.smoothed)
    assert first.smoothed.shape == positions.shape
    assert first.chr == 'chr1'

def test_label_swap_flips_track(chromosome, design):
    """
    Test that swapping the condition labels negates the smoothed difference
    """
    meth, coverage, positions = chromosome
    config = DMRConfig(min_in_span=10, bandwidth=500)
    swapped = design.copy()
    swapped[:, 1] = 1 - swapped[:, 1]
    track = smooth_differences('chr1', meth, coverage, positions, design, config)
    flipped = smooth_differences('chr1', meth, coverage, positions, swapped, config)
    assert np.allclose(track.smoothed, -flipped.smoothed)
