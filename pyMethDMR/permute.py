import logging
from itertools import combinations
from math import comb
from typing import List, NamedTuple
import numpy as np

logger = logging.getLogger(__name__)

class LabelAssignment(NamedTuple):
    perm_id: int
    labels: np.ndarray

class PermutationPlan(NamedTuple):
    assignments: List[LabelAssignment]
    n_possible: int
    limited: bool

def _canonical(group, n, balanced):
    """Key identifying the relabeling; with balanced set a split and its complement share a key."""
    group = frozenset(int(i) for i in group)
    if balanced and 0 not in group:
        group = frozenset(range(n)) - group
    return group

def _labels(group, n):
    labels = np.zeros(n, dtype=np.int64)
    labels[sorted(group)] = 1
    return labels

def count_permutations(labels, symmetric=True):
    """
    Number of distinct relabelings with the observed group sizes, excluding the observed one.
    With equal group sizes and symmetric=True a relabeling and its complement are counted once; they give regions
    of opposite sign and equal magnitude only when the cutoff is symmetric about zero. Otherwise both orientations
    count, except the complement of the observed labeling, which is the observed partition.
    """
    labels = np.asarray(labels)
    n, n1 = labels.size, int(labels.sum())
    total = comb(n, n1)
    if 2 * n1 == n:
        return total // 2 - 1 if symmetric else total - 2
    return total - 1

def enumerate_permutations(labels, max_perms=10, seed=None, min_perms_warning=10, symmetric=True):
    """
    Generate condition relabelings used to build the null distribution.

    Every relabeling keeps the observed group sizes and the observed partition is never returned. When the number
    of distinct relabelings does not exceed max_perms all of them are returned in lexicographic order, otherwise
    max_perms are drawn uniformly without replacement.

    Parameters:
        labels (1D numpy array): Observed 0/1 condition indicator of each sample.
        max_perms (int, default: 10): Maximum number of relabelings.
        seed (int or None, default: None): Seed for sampling; unused when enumeration is exhaustive.
        min_perms_warning (int, default: 10): Fewer possible relabelings than this marks the plan as limited.
        symmetric (bool, default: True): Treat a balanced relabeling and its complement as one. Set False when the
            cutoff bounds are not symmetric about zero.

    Returns:
        PermutationPlan: The relabelings, the number possible and whether null resolution is limited.
    """
    labels = np.asarray(labels).astype(np.int64)
    n, n1 = labels.size, int(labels.sum())
    balanced = symmetric and 2 * n1 == n
    observed = _canonical(np.flatnonzero(labels), n, balanced)
    n_possible = count_permutations(labels, symmetric)

    excluded = {observed}
    if 2 * n1 == n and not balanced:
        excluded.add(frozenset(range(n)) - observed)

    groups = []
    if n_possible <= max_perms:
        seen = set(excluded)
        for group in combinations(range(n), n1):
            key = _canonical(group, n, balanced)
            if key not in seen:
                seen.add(key)
                groups.append(group)
    else:
        rng = np.random.default_rng(seed)
        seen = set(excluded)
        while len(groups) < max_perms:
            group = tuple(np.sort(rng.choice(n, size=n1, replace=False)))
            key = _canonical(group, n, balanced)
            if key not in seen:
                seen.add(key)
                groups.append(group)

    assignments = [LabelAssignment(perm_id, _labels(group, n)) for perm_id, group in enumerate(groups)]
    limited = n_possible < min_perms_warning
    if limited:
        logger.warning(f"Only {n_possible} distinct permutations are available; the null distribution has limited resolution")
    logger.info(f"Using {len(assignments)} of {n_possible} possible permutations")
    return PermutationPlan(assignments, n_possible, limited)

class NullPool:
    """
    Multiset of absolute region statistics from permuted labelings.

    Contributions are accumulated per unit of work and merged; the pooled values do not depend on the order in which
    contributions arrive.
    """

    def __init__(self):
        self._chunks = []

    def add(self, stats):
        stats = np.abs(np.asarray(stats, dtype='float64').ravel())
        self._chunks.append(stats[np.isfinite(stats)])
        return self

    def merge(self, other):
        self._chunks.extend(other._chunks)
        return self

    @property
    def values(self):
        if not self._chunks:
            return np.empty(0)
        return np.sort(np.concatenate(self._chunks))

    def __len__(self):
        return int(sum(chunk.size for chunk in self._chunks))
