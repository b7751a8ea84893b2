import numpy as np
from numba import njit
from pyMethDMR.type_annotations import CandidateRegion

@njit
def _scan(pos, track, lower, upper, max_gap, min_sites):
    """
    Linear scan returning first and last index of each run of same-direction calls.

    A site calls up when its value is strictly above upper and down when strictly below lower; NaN never calls.
    A run is broken by a change of direction, an uncalled site, or a gap larger than max_gap.
    """
    n = track.shape[0]
    starts = np.empty(n, dtype=np.int64)
    ends = np.empty(n, dtype=np.int64)
    count = 0
    cur_start = 0
    cur_dir = 0
    for i in range(n):
        d = 0
        if track[i] > upper:
            d = 1
        elif track[i] < lower:
            d = -1
        if cur_dir != 0 and d == cur_dir and pos[i] - pos[i - 1] <= max_gap:
            continue
        if cur_dir != 0 and i - cur_start >= min_sites:
            starts[count] = cur_start
            ends[count] = i - 1
            count += 1
        cur_dir = d
        cur_start = i
    if cur_dir != 0 and n - cur_start >= min_sites:
        starts[count] = cur_start
        ends[count] = n - 1
        count += 1
    return starts[:count], ends[:count]

def segment_track(genomic_positions, track, lower, upper, max_gap=1000, min_num_region=5):
    """
    Split a smoothed difference track into maximal runs of sites beyond the cutoff.

    Parameters:
        genomic_positions (1D numpy array): Sorted positions of the sites on one chromosome.
        track (1D numpy array): Smoothed difference at each site.
        lower (float): Values strictly below lower are called as negative.
        upper (float): Values strictly above upper are called as positive.
        max_gap (int, default: 1000): Maximum distance between adjacent sites of a region.
        min_num_region (int, default: 5): Runs with fewer sites are discarded.

    Returns:
        tuple: Arrays of first and last (inclusive) site index of each region, in genomic order.
    """
    if len(track) == 0:
        return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.int64)
    return _scan(np.ascontiguousarray(genomic_positions, dtype=np.float64),
                 np.ascontiguousarray(track, dtype=np.float64),
                 float(lower), float(upper), float(max_gap), int(min_num_region))

def find_candidates(chrom, genomic_positions, track, config):
    """
    Turn a chromosome's smoothed difference track into candidate regions.

    Parameters:
        chrom (int or str): Chromosome the track belongs to.
        genomic_positions (1D numpy array): Sorted positions of the sites.
        track (1D numpy array): Smoothed difference at each site.
        config (DMRConfig): Supplies cutoff, max_gap and min_num_region.

    Returns:
        list: CandidateRegion for each region, ordered by position.
    """
    lower, upper = config.cutoff_bounds
    starts, ends = segment_track(genomic_positions, track, lower, upper, config.max_gap, config.min_num_region)
    candidates = []
    for first, last in zip(starts, ends):
        values = track[first:last+1]
        candidates.append(CandidateRegion(
            chr=chrom,
            start=int(genomic_positions[first]),
            end=int(genomic_positions[last]),
            index_start=int(first),
            index_end=int(last),
            n_sites=int(last - first + 1),
            avg=float(values.mean()),
            sign=int(np.sign(values[0])),
            area=float(np.abs(values).sum()),
        ))
    return candidates
