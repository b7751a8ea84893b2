import logging
import numpy as np
import pandas as pd
from pyMethDMR.errors import DMRInputError

logger = logging.getLogger(__name__)

def filter_loci(meth, coverage, chr, genomic_positions):
    """
    Remove sites that have no coverage in at least one sample.

    Parameters:
        meth (2D numpy array): Count table of methylated reads at each cpg (rows) for each sample (columns).
        coverage (2D numpy array): Count table of total reads at each cpg (rows) for each sample (columns).
        chr (1D array): Chromosome of each cpg.
        genomic_positions (1D array): Genomic position of each cpg.

    Returns:
        tuple: Filtered meth, coverage, chr and genomic_positions, and the boolean mask of kept sites.
    """
    meth = np.asarray(meth)
    coverage = np.asarray(coverage)
    if meth.shape != coverage.shape:
        raise DMRInputError("'meth' and 'coverage' must have the same shape")
    keep = np.all(coverage > 0, axis=1)
    dropped = int((~keep).sum())
    if dropped:
        logger.info(f"Removed {dropped} of {keep.size} sites with zero coverage in at least one sample")
    return meth[keep], coverage[keep], np.asarray(chr)[keep], np.asarray(genomic_positions)[keep], keep

def chromosome_blocks(chr):
    """
    Return (chromosome, start, stop) for each contiguous run of identical chromosome ids, in input order.
    """
    chr = np.asarray(chr)
    if chr.size == 0:
        return []
    breaks = np.flatnonzero(chr[1:] != chr[:-1]) + 1
    starts = np.concatenate([[0], breaks])
    stops = np.concatenate([breaks, [chr.size]])
    return [(chr[start], int(start), int(stop)) for start, stop in zip(starts, stops)]

def validate_counts(meth, coverage, chr, genomic_positions):
    """
    Check count matrices and coordinates before any computation.

    Raises:
        DMRInputError: If shapes disagree, counts are negative, methylated counts exceed coverage, any site has zero
            coverage in a sample, a chromosome is split into several blocks, or positions are not strictly increasing
            within a chromosome.
    """
    if meth.ndim != 2:
        raise DMRInputError("'meth' and 'coverage' must be 2D arrays of sites (rows) by samples (columns)")
    if meth.shape != coverage.shape:
        raise DMRInputError(f"'meth' {meth.shape} and 'coverage' {coverage.shape} must have the same shape")
    if len(chr) != meth.shape[0]:
        raise DMRInputError(f"Length of 'chr' ({len(chr)}) should equal the number of rows (cpgs) in meth ({meth.shape[0]})")
    if len(genomic_positions) != meth.shape[0]:
        raise DMRInputError(f"Length of 'genomic_positions' ({len(genomic_positions)}) should equal the number of rows (cpgs) in meth ({meth.shape[0]})")
    if meth.shape[0] == 0:
        raise DMRInputError("No sites supplied")
    if np.isnan(meth).any() or np.isnan(coverage).any():
        raise DMRInputError("Counts contain missing values")
    if (meth < 0).any():
        raise DMRInputError("Methylated counts must be non-negative")
    if (meth > coverage).any():
        raise DMRInputError("Methylated counts cannot exceed total counts")
    zero = np.flatnonzero(np.any(coverage <= 0, axis=1))
    if zero.size:
        raise DMRInputError(f"{zero.size} sites have zero coverage in at least one sample (first at row {zero[0]}); run filter_loci first")

    blocks = chromosome_blocks(chr)
    names = [block[0] for block in blocks]
    if len(set(names)) != len(names):
        raise DMRInputError("Sites of each chromosome must be stored contiguously")
    for name, start, stop in blocks:
        if np.any(np.diff(genomic_positions[start:stop]) <= 0):
            raise DMRInputError(f"Positions on chromosome {name} must be unique and sorted ascending")
    return blocks

def build_design(condition, covs=None, test_covariate="condition"):
    """
    Build the sample design matrix [intercept, condition indicator, covariates].

    Parameters:
        condition (1D array): Condition label of each sample, exactly two distinct values. The first value in sorted
            order is the reference level (indicator 0).
        covs (pandas dataframe or None): Adjustment covariates, one row per sample. Categorical columns are one-hot
            encoded with their first level dropped.
        test_covariate (str): Name of the condition indicator column.

    Returns:
        tuple: Design dataframe, the condition indicator (0/1 integer array) and the condition levels.
    """
    condition = np.asarray(condition)
    levels = np.unique(condition)
    if levels.size != 2:
        raise DMRInputError(f"'condition' must have exactly two distinct values, got {levels.size}")
    labels = (condition == levels[1]).astype(np.int64)
    counts = np.bincount(labels, minlength=2)
    if counts.min() < 2:
        raise DMRInputError(f"Each condition needs at least 2 samples, got {dict(zip(levels.tolist(), counts.tolist()))}")

    design = pd.DataFrame({'intercept': np.ones(labels.size), test_covariate: labels.astype('float64')})
    if covs is not None:
        if not isinstance(covs, pd.DataFrame):
            covs = pd.DataFrame(np.asarray(covs))
            covs.columns = [f'cov{i}' for i in range(covs.shape[1])]
        if covs.shape[0] != labels.size:
            raise DMRInputError("covs should have one row for each sample (column) in meth/coverage")
        if covs.isnull().any().any():
            raise DMRInputError("covs contains missing values")
        encoded = pd.get_dummies(covs.reset_index(drop=True), drop_first=True, dtype='float64')
        if test_covariate in encoded.columns:
            raise DMRInputError(f"covs cannot contain a column named '{test_covariate}'")
        design = pd.concat([design, encoded.astype('float64')], axis=1)

    if design.shape[1] >= design.shape[0]:
        raise DMRInputError(f"Too many covariates ({design.shape[1]}) for sample size ({design.shape[0]})")
    if np.linalg.matrix_rank(design.to_numpy()) < design.shape[1]:
        raise DMRInputError("Design matrix is not full rank")
    return design, labels, levels
