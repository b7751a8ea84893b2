from dataclasses import dataclass, asdict
from typing import Optional
import numpy as np
from pyMethDMR.type_annotations import Cutoff

STATS = ("stat", "beta", "avg", "area", "L")

@dataclass(frozen=True)
class DMRConfig:
    """
    Immutable settings shared by every stage of a region call.

    Parameters:
        bandwidth (int, default: 1000): Smoothing bandwidth in base pairs.
        min_in_span (int, default: 30): Minimum number of sites in a smoothing window. Sites with fewer
            neighbours inside the bandwidth are smoothed over their min_in_span nearest sites.
        cutoff (float or tuple, default: 0.1): Smoothed difference a site must exceed to be called. A scalar c
            gives bounds (-c, c); a pair gives explicit (lower, upper) bounds.
        max_gap (int, default: 1000): Maximum distance in base pairs between adjacent sites of a region.
        min_num_region (int, default: 5): Minimum number of sites in a candidate region.
        max_perms (int, default: 10): Maximum number of label permutations used to build the null.
        max_iter (int, default: 100): Iteration cap for the correlation parameter fit of each region.
        seed (int or None, default: None): Seed used only when permutations are sampled.
        stat (str, default: "stat"): Region statistic compared against the null, one of
            "stat" (coefficient / standard error), "beta", "avg", "area" or "L" (number of sites).
        min_perms_warning (int, default: 10): Fewer available permutations than this flags the null as limited.
        pseudo_count (float, default: 0.1): Pseudo count added before the arcsine transform.
        tol (float, default: 1e-6): Absolute tolerance on the correlation parameter.
        max_rho (float, default: 0.99): Upper bound on the correlation between sites one spacing apart.
        test_covariate (str, default: "condition"): Name given to the condition column of the design.
    """
    bandwidth: int = 1000
    min_in_span: int = 30
    cutoff: Cutoff = 0.1
    max_gap: int = 1000
    min_num_region: int = 5
    max_perms: int = 10
    max_iter: int = 100
    seed: Optional[int] = None
    stat: str = "stat"
    min_perms_warning: int = 10
    pseudo_count: float = 0.1
    tol: float = 1e-6
    max_rho: float = 0.99
    test_covariate: str = "condition"

    def __post_init__(self):
        for name in ("min_in_span", "min_num_region", "max_perms", "max_iter", "min_perms_warning"):
            value = getattr(self, name)
            if not isinstance(value, (int, np.integer)) or value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        for name in ("bandwidth", "max_gap"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)!r}")
        if self.stat not in STATS:
            raise ValueError(f"stat must be one of {STATS}, got {self.stat!r}")
        if self.pseudo_count < 0:
            raise ValueError("pseudo_count must be non-negative")
        if not 0 < self.max_rho < 1:
            raise ValueError("max_rho must lie in (0, 1)")
        if self.tol <= 0:
            raise ValueError("tol must be positive")
        lower, upper = self.cutoff_bounds
        if not lower <= 0 <= upper or lower == upper:
            raise ValueError(f"cutoff bounds must straddle zero, got ({lower}, {upper})")

    @property
    def cutoff_bounds(self):
        """(lower, upper) bounds a smoothed difference must fall outside to be called."""
        if np.ndim(self.cutoff) == 0:
            return -abs(float(self.cutoff)), abs(float(self.cutoff))
        if len(self.cutoff) != 2:
            raise ValueError("cutoff must be a scalar or a (lower, upper) pair")
        lower, upper = sorted(float(c) for c in self.cutoff)
        return lower, upper

    @property
    def symmetric_cutoff(self):
        """Whether the cutoff bounds mirror each other about zero."""
        lower, upper = self.cutoff_bounds
        return lower == -upper

    def to_dict(self):
        return asdict(self)
