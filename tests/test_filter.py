import pytest
import numpy as np
import pandas as pd
import os
import sys
scripts_path = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, scripts_path)
from pyMethDMR.filter import filter_loci, chromosome_blocks, validate_counts, build_design
from pyMethDMR.config import DMRConfig
from pyMethDMR.errors import DMRInputError

@pytest.fixture
def counts():
    np.random.seed(4)
    coverage = np.random.randint(5, 30, size=(12, 4)).astype(float)
    meth = np.floor(coverage * 0.4)
    chr = np.repeat(['chr1', 'chr2'], 6)
    positions = np.tile(np.arange(100, 700, 100), 2)
    return meth, coverage, chr, positions

def test_filter_loci_drops_zero_coverage(counts):
    """
    Test that sites with zero coverage in any sample are removed and the rest kept in order
    """
    meth, coverage, chr, positions = counts
    coverage[3, 2] = 0
    meth[3, 2] = 0
    meth_f, cov_f, chr_f, pos_f, keep = filter_loci(meth, coverage, chr, positions)
    assert meth_f.shape == (11, 4)
    assert not keep[3] and keep.sum() == 11
    assert list(pos_f[:4]) == [100, 200, 300, 500]
    assert (cov_f > 0).all()

def test_chromosome_blocks():
    blocks = chromosome_blocks(np.array(['b', 'b', 'a', 'a', 'a', 'c']))
    assert blocks == [('b', 0, 2), ('a', 2, 5), ('c', 5, 6)]

def test_validate_counts_returns_blocks(counts):
    blocks = validate_counts(*counts)
    assert [b[0] for b in blocks] == ['chr1', 'chr2']

def test_meth_exceeding_coverage(counts):
    meth, coverage, chr, positions = counts
    meth[0, 0] = coverage[0, 0] + 1
    with pytest.raises(DMRInputError):
        validate_counts(meth, coverage, chr, positions)

def test_negative_counts(counts):
    meth, coverage, chr, positions = counts
    meth[1, 1] = -1
    with pytest.raises(DMRInputError):
        validate_counts(meth, coverage, chr, positions)

def test_zero_coverage_rejected(counts):
    meth, coverage, chr, positions = counts
    coverage[5, 0] = 0
    meth[5, 0] = 0
    with pytest.raises(DMRInputError):
        validate_counts(meth, coverage, chr, positions)

def test_unsorted_positions(counts):
    meth, coverage, chr, positions = counts
    positions = positions.copy()
    positions[2], positions[3] = positions[3], positions[2]
    with pytest.raises(DMRInputError):
        validate_counts(meth, coverage, chr, positions)

def test_duplicate_positions(counts):
    meth, coverage, chr, positions = counts
    positions = positions.copy()
    positions[1] = positions[0]
    with pytest.raises(DMRInputError):
        validate_counts(meth, coverage, chr, positions)

def test_split_chromosome(counts):
    meth, coverage, chr, positions = counts
    chr = np.array(['chr1'] * 3 + ['chr2'] * 6 + ['chr1'] * 3)
    positions = np.concatenate([[1, 2, 3], np.arange(1, 7), [10, 11, 12]])
    with pytest.raises(DMRInputError):
        validate_counts(meth, coverage, chr, positions)

def test_shape_mismatch(counts):
    meth, coverage, chr, positions = counts
    with pytest.raises(DMRInputError):
        validate_counts(meth, coverage[:, :3], chr, positions)
    with pytest.raises(DMRInputError):
        validate_counts(meth, coverage, chr[:-1], positions)

def test_build_design_levels():
    """
    Test that the second level in sorted order is coded 1
    """
    design, labels, levels = build_design(np.array(['treated', 'control', 'treated', 'control']))
    assert list(levels) == ['control', 'treated']
    assert list(labels) == [1, 0, 1, 0]
    assert list(design.columns) == ['intercept', 'condition']
    assert (design['intercept'] == 1).all()

def test_build_design_covariates():
    covs = pd.DataFrame({'sex': ['M', 'F', 'F', 'M', 'M', 'F'], 'age': [30., 41., 52., 38., 45., 60.]})
    design, labels, levels = build_design(np.array([0, 0, 0, 1, 1, 1]), covs)
    assert design.shape == (6, 4)
    assert 'age' in design.columns and 'sex_M' in design.columns

@pytest.mark.parametrize("condition", [
    np.array([0, 0, 0, 0]),
    np.array([0, 1, 2, 0, 1, 2]),
    np.array([0, 1, 1, 1]),
])
def test_build_design_bad_condition(condition):
    with pytest.raises(DMRInputError):
        build_design(condition)

def test_build_design_rank_deficient():
    covs = pd.DataFrame({'batch': [0., 0., 1., 1., 2.], 'dup': [0., 0., 1., 1., 2.]})
    with pytest.raises(DMRInputError):
        build_design(np.array([0, 1, 0, 1, 1]), covs)

def test_build_design_too_many_covariates():
    covs = pd.DataFrame(np.random.normal(size=(4, 2)), columns=['a', 'b'])
    with pytest.raises(DMRInputError):
        build_design(np.array([0, 0, 1, 1]), covs)

def test_config_cutoff_bounds():
    assert DMRConfig(cutoff=0.2).cutoff_bounds == (-0.2, 0.2)
    assert DMRConfig(cutoff=(0.3, -0.1)).cutoff_bounds == (-0.1, 0.3)

@pytest.mark.parametrize("kwargs", [
    {'cutoff': 0},
    {'cutoff': (0.1, 0.2)},
    {'stat': 'median'},
    {'max_perms': 0},
    {'min_in_span': 2.5},
    {'bandwidth': -10},
    {'max_rho': 1.0},
])
def test_config_invalid(kwargs):
    with pytest.raises(ValueError):
        DMRConfig(**kwargs)

def test_config_frozen():
    config = DMRConfig()
    with pytest.raises(Exception):
        config.cutoff = 0.5
    assert config.to_dict()['max_perms'] == 10

def test_config_symmetric_cutoff():
    assert DMRConfig(cutoff=0.1).symmetric_cutoff
    assert DMRConfig(cutoff=(-0.2, 0.2)).symmetric_cutoff
    assert not DMRConfig(cutoff=(-0.05, 0.3)).symmetric_cutoff
