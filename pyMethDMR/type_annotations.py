"""
Type annotations for improved static type checking with mypy.

This module provides the NamedTuples and type aliases shared by the
smoothing, segmentation, fitting and permutation stages of pyMethDMR.
"""

from typing import List, NamedTuple, Optional, Union
import numpy as np
import pandas as pd

# Common types used across the codebase
ChromosomeID = Union[int, str]
Positions = np.ndarray
MethylationCount = np.ndarray
CoverageCount = np.ndarray
LabelVector = np.ndarray
DesignMatrix = Union[pd.DataFrame, np.ndarray]
Cutoff = Union[float, tuple]

class SmoothedTrack(NamedTuple):
    chr: ChromosomeID
    positions: np.ndarray
    raw: np.ndarray
    precision: np.ndarray
    smoothed: np.ndarray
    weights: np.ndarray

class CandidateRegion(NamedTuple):
    chr: ChromosomeID
    start: int
    end: int
    index_start: int
    index_end: int
    n_sites: int
    avg: float
    sign: int
    area: float

class RegionFit(NamedTuple):
    region: CandidateRegion
    beta: float
    se: float
    stat: float
    rho: float
    converged: bool
    fallback: bool

class RegionRecord(NamedTuple):
    chr: ChromosomeID
    start: int
    end: int
    num_cpgs: int
    area: float
    stat: float
    pval: float
    qval: float
    beta: float
    se: float
    avg: float
    rho: float
    fallback: bool

class ChromosomeResult(NamedTuple):
    chr: ChromosomeID
    perm_id: Optional[int]
    fits: List[RegionFit]
    warnings: List[str]
    failed: bool

