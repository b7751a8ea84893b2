import pytest
import numpy as np
from pyMethDMR.segment import segment_track, find_candidates
from pyMethDMR.config import DMRConfig

@pytest.fixture
def positions():
    return np.arange(100, 2100, 100)

@pytest.fixture
def plateau():
    track = np.repeat(0.02, 20)
    track[5:13] = 0.3
    return track

def test_single_plateau(positions, plateau):
    """
    Test that a plateau above the cutoff becomes exactly one region with its sites
    """
    regions = find_candidates('chr1', positions, plateau, DMRConfig(cutoff=0.1, min_num_region=5))
    assert len(regions) == 1
    region = regions[0]
    assert (region.index_start, region.index_end, region.n_sites) == (5, 12, 8)
    assert (region.start, region.end) == (600, 1300)
    assert region.sign == 1
    assert region.avg == pytest.approx(0.3)
    assert region.area == pytest.approx(2.4)

def test_cutoff_is_strict(positions, plateau):
    plateau[5:13] = 0.1
    starts, ends = segment_track(positions, plateau, -0.1, 0.1, min_num_region=1)
    assert starts.size == 0

def test_direction_change_splits(positions):
    track = np.zeros(20)
    track[2:8] = 0.5
    track[8:14] = -0.5
    regions = find_candidates('chr1', positions, track, DMRConfig(cutoff=0.1, min_num_region=3))
    assert [(r.index_start, r.index_end, r.sign) for r in regions] == [(2, 7, 1), (8, 13, -1)]

def test_gap_splits_region(plateau):
    positions = np.arange(100, 2100, 100)
    positions[9:] += 5000
    starts, ends = segment_track(positions, plateau, -0.1, 0.1, max_gap=1000, min_num_region=2)
    assert list(starts) == [5, 9]
    assert list(ends) == [8, 12]

def test_short_runs_discarded(positions, plateau):
    starts, ends = segment_track(positions, plateau, -0.1, 0.1, min_num_region=9)
    assert starts.size == 0
    starts, ends = segment_track(positions, plateau, -0.1, 0.1, min_num_region=8)
    assert starts.size == 1

def test_nan_never_calls(positions, plateau):
    plateau[8] = np.nan
    starts, ends = segment_track(positions, plateau, -0.1, 0.1, min_num_region=1)
    assert list(zip(starts, ends)) == [(5, 7), (9, 12)]

def test_asymmetric_cutoff(positions):
    track = np.zeros(20)
    track[0:5] = -0.15
    track[10:16] = 0.15
    regions = find_candidates('chr1', positions, track, DMRConfig(cutoff=(-0.1, 0.2), min_num_region=3))
    assert len(regions) == 1 and regions[0].sign == -1

def test_regions_ordered_and_disjoint():
    np.random.seed(3)
    positions = np.cumsum(np.random.randint(10, 300, size=500))
    track = np.convolve(np.random.normal(0, 0.3, 500), np.ones(10)/10, mode='same')
    regions = find_candidates('chr2', positions, track, DMRConfig(cutoff=0.05, min_num_region=3))
    assert len(regions) > 0
    for first, second in zip(regions[:-1], regions[1:]):
        assert first.index_end < second.index_start
        assert first.end < second.start
    for region in regions:
        values = track[region.index_start:region.index_end+1]
        assert (np.abs(values) > 0.05).all()
        assert len(set(np.sign(values))) == 1

def test_empty_track():
    starts, ends = segment_track(np.array([]), np.array([]), -0.1, 0.1)
    assert starts.size == 0 and ends.size == 0
