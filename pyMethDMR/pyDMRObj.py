import copy
import logging
from dataclasses import replace
import numpy as np
import pandas as pd
import ray
from pyMethDMR.config import DMRConfig
from pyMethDMR.errors import DMRInputError
from pyMethDMR.filter import validate_counts, build_design
from pyMethDMR.smooth import smooth_differences
from pyMethDMR.segment import find_candidates
from pyMethDMR.FitRegion import FitRegion
from pyMethDMR.permute import enumerate_permutations, NullPool
from pyMethDMR.significance import empirical_pvalues, bh_adjust
from pyMethDMR.type_annotations import (ChromosomeResult, RegionFit, RegionRecord, MethylationCount, CoverageCount,
                                        Positions, LabelVector, DesignMatrix)

logger = logging.getLogger(__name__)

def fit_candidate(region, meth, coverage, genomic_positions, X, config, test_idx=1):
    """
    Fit the correlated error regression to one candidate region of a chromosome.

    Parameters:
        region (CandidateRegion): Region to fit; index_start/index_end index into the chromosome arrays.
        meth (2D numpy array): Methylated reads of the chromosome, cpgs (rows) x samples (columns).
        coverage (2D numpy array): Total reads of the chromosome, cpgs (rows) x samples (columns).
        genomic_positions (1D numpy array): Positions of the chromosome's cpgs.
        X (2D numpy array): Sample design matrix.
        config (DMRConfig): Supplies iteration cap, tolerance and pseudo count.
        test_idx (int, default: 1): Column of X holding the condition indicator.

    Returns:
        RegionFit: Condition coefficient, standard error, statistic and correlation of the region.
    """
    ix = np.s_[region.index_start:region.index_end+1]
    fr = FitRegion(meth[ix], coverage[ix], genomic_positions[ix], X, test_idx=test_idx, c0=config.pseudo_count)
    res = fr.fit(max_iter=config.max_iter, tol=config.tol, max_rho=config.max_rho)
    return RegionFit(region, float(res.beta), float(res.se), float(res.stat), float(res.rho),
                     bool(res.success), bool(res.fallback))

def process_chromosome(chrom, meth, coverage, genomic_positions, X, config, perm_id=None, test_idx=1):
    """
    Smooth, segment and fit one chromosome under one labeling of the samples.

    This is the independent unit of work: nothing is shared with other chromosomes or labelings. Numerical failures
    are reported in the result rather than raised so a failed unit can be discarded on its own.

    Returns:
        ChromosomeResult: Region fits of the chromosome, warnings, and whether the unit failed.
    """
    try:
        track = smooth_differences(chrom, meth, coverage, genomic_positions, X, config, test_idx)
        if track is None:
            return ChromosomeResult(chrom, perm_id, [], [f"Chromosome {chrom} has {len(genomic_positions)} sites, fewer than "
                                                         f"min_in_span ({config.min_in_span}); no regions called"], False)
        candidates = find_candidates(chrom, genomic_positions, track.smoothed, config)
        fits = [fit_candidate(region, meth, coverage, genomic_positions, X, config, test_idx) for region in candidates]
    except (np.linalg.LinAlgError, FloatingPointError) as err:
        return ChromosomeResult(chrom, perm_id, [], [f"Chromosome {chrom} failed ({type(err).__name__}: {err})"], True)
    return ChromosomeResult(chrom, perm_id, fits, [], False)

@ray.remote
def process_chromosome_remote(chrom, meth, coverage, genomic_positions, X, config, perm_id=None, test_idx=1):
    """
    Ray task wrapper of process_chromosome; array arguments are passed as ray.put() references.
    """
    return process_chromosome(chrom, meth, coverage, genomic_positions, X, config, perm_id, test_idx)

def region_statistic(fit, stat="stat"):
    """Value of the chosen region statistic compared against the permutation null."""
    if stat == "stat":
        return fit.stat
    if stat == "beta":
        return fit.beta
    return {"avg": fit.region.avg, "area": fit.region.area, "L": fit.region.n_sites}[stat]

class DMRResults:
    """
    Ordered, indexable collection of called regions with run diagnostics.

    Attributes:
        regions (list): RegionRecord of each region, ordered by chromosome (input order) and start.
        warnings (list): Non-fatal problems met during the run.
        n_permutations (int): Number of permutations contributing to the null.
        null_pool_size (int): Number of permutation statistics in the null.
        limited_permutations (bool): Whether fewer permutations than config.min_perms_warning were available.
        config (DMRConfig): Settings of the run.
    """

    def __init__(self, regions, warnings=None, n_permutations=0, null_pool_size=0, limited_permutations=False,
                 config=None):
        self.regions = list(regions)
        self.warnings = list(warnings) if warnings is not None else []
        self.n_permutations = n_permutations
        self.null_pool_size = null_pool_size
        self.limited_permutations = limited_permutations
        self.config = config

    def __len__(self):
        return len(self.regions)

    def __getitem__(self, index):
        return self.regions[index]

    def __iter__(self):
        return iter(self.regions)

    def __repr__(self):
        return (f"DMRResults({len(self.regions)} regions, {self.n_permutations} permutations, "
                f"null size {self.null_pool_size}, {len(self.warnings)} warnings)")

    def to_dataframe(self):
        """
        Flat table with one row per region.

        Returns:
            pandas dataframe: Columns chr, start, end, num_cpgs, area, stat, pval, qval, beta, se, avg, rho, fallback.
        """
        return pd.DataFrame(self.regions, columns=list(RegionRecord._fields))

    def significant(self, alpha=0.05):
        """Regions with q-value at or below alpha."""
        res = self.to_dataframe()
        return res[res["qval"] <= alpha].reset_index(drop=True)

class pyDMRObj():
    """
    A Python class detecting differentially methylated regions between two conditions.
    These include:
        Smoothing the coverage weighted per-site condition difference along each chromosome: smooth().
        Segmenting the smoothed difference into candidate regions: find_candidates().
        Fitting a regression with correlated errors to each candidate region: fit_regions().
        Building a pooled null distribution by permuting condition labels: null_distribution().
        Assigning empirical p-values and Benjamini-Hochberg q-values to the observed regions: call_dmrs().

    Chromosomes under each labeling are independent units of work and can be processed in parallel (set ncpu > 1).
    """

    def __init__(self, meth: MethylationCount, coverage: CoverageCount, chr, genomic_positions: Positions,
                 condition: LabelVector, covs: DesignMatrix = None, config: DMRConfig = None, **config_kwargs):
        """
        Initialize pyDMRObj Class with methylation data, sample design and configuration.

        Parameters:
            meth (2D numpy array): Count table of methylated reads at each CpG (rows) for each sample (columns).
            coverage (2D numpy array): Count table of total reads at each CpG (rows) for each sample (columns).
            chr (1D array): Chromosome of each CpG. Each chromosome's CpGs must be stored contiguously.
            genomic_positions (1D numpy array): Position of each CpG, strictly increasing within a chromosome.
            condition (1D array): Condition label of each sample (column); exactly two distinct values with at least two
                samples each. The second value in sorted order is the tested level.
            covs (pandas DataFrame, optional): Adjustment covariates with one row per sample. Categorical columns are
                one-hot encoded.
            config (DMRConfig, optional): Run settings. Defaults to DMRConfig().
            **config_kwargs: Overrides applied to config, e.g. cutoff=0.05.

        Raises:
            DMRInputError: If counts, coordinates or the design are invalid. Nothing is computed in that case.
        """
        if config is None:
            config = DMRConfig(**config_kwargs)
        elif config_kwargs:
            config = replace(config, **config_kwargs)
        self.config = config

        self.meth = np.asarray(meth, dtype='float64')
        self.coverage = np.asarray(coverage, dtype='float64')
        self.chr = np.asarray(chr)
        self.genomic_positions = np.asarray(genomic_positions)
        self.blocks = validate_counts(self.meth, self.coverage, self.chr, self.genomic_positions)
        self.design, self.labels, self.levels = build_design(condition, covs, config.test_covariate)
        if self.design.shape[0] != self.meth.shape[1]:
            raise DMRInputError(f"condition has {self.design.shape[0]} samples but meth has {self.meth.shape[1]} columns")
        self.X = self.design.to_numpy()
        self.test_idx = 1
        self.ncpgs, self.nsamples = self.meth.shape
        self.chromosomes = [block[0] for block in self.blocks]
        self.chrom_start = {block[0]: block[1] for block in self.blocks}
        self.chrom_slices = {block[0]: np.s_[block[1]:block[2]] for block in self.blocks}

    def design_for(self, labels=None):
        """Sample design with the condition column replaced by labels (observed labels when None)."""
        if labels is None:
            return self.X
        X = self.X.copy()
        X[:, self.test_idx] = labels
        return X

    def chromosome_data(self, chrom):
        ix = self.chrom_slices[chrom]
        return self.meth[ix], self.coverage[ix], self.genomic_positions[ix]

    def smooth(self, labels=None):
        """
        Smoothed difference track of every chromosome.

        Returns:
            dict: chromosome -> SmoothedTrack, or None for chromosomes with fewer than min_in_span CpGs.
        """
        X = self.design_for(labels)
        return {chrom: smooth_differences(chrom, *self.chromosome_data(chrom), X, self.config, self.test_idx)
                for chrom in self.chromosomes}

    def find_candidates(self, labels=None):
        """
        Candidate regions of every chromosome, ordered by chromosome and position.
        """
        candidates = []
        for chrom, track in self.smooth(labels).items():
            if track is not None:
                candidates += find_candidates(chrom, track.positions, track.smoothed, self.config)
        return candidates

    def fit_regions(self, candidates, labels=None):
        """
        Fit the correlated error regression to each candidate region.

        Returns:
            list: RegionFit for each candidate, in the same order.
        """
        X = self.design_for(labels)
        return [fit_candidate(region, *self.chromosome_data(region.chr), X, self.config, self.test_idx)
                for region in candidates]

    def run_units(self, units, ncpu=1):
        """
        Run (chromosome, perm_id, labels) units of work, sequentially or as Ray tasks when ncpu > 1.

        Returns:
            list: ChromosomeResult of each unit, in the order of units.
        """
        if ncpu > 1:
            ray_initialized = ray.is_initialized()
            if not ray_initialized:
                ray.init(num_cpus=ncpu)
            try:
                data_ids = {chrom: [ray.put(array) for array in self.chromosome_data(chrom)] for chrom in self.chromosomes}
                config_id = ray.put(self.config)
                results = ray.get([process_chromosome_remote.remote(chrom, *data_ids[chrom], self.design_for(labels),
                                                                    config_id, perm_id, self.test_idx)
                                   for chrom, perm_id, labels in units])
            finally:
                if not ray_initialized:
                    ray.shutdown()
        else:
            results = [process_chromosome(chrom, *self.chromosome_data(chrom), self.design_for(labels), self.config,
                                          perm_id, self.test_idx)
                       for chrom, perm_id, labels in units]
        return results

    def observed_regions(self, ncpu=1):
        """
        Candidate regions and their fits under the observed labeling.

        Returns:
            tuple: List of RegionFit and list of warnings.
        """
        results = self.run_units([(chrom, None, None) for chrom in self.chromosomes], ncpu=ncpu)
        fits = []
        warnings = []
        for res in results:
            fits += res.fits
            warnings += res.warnings
        for message in warnings:
            logger.warning(message)
        logger.info(f"Found {len(fits)} candidate regions under the observed labeling")
        return fits, warnings

    def null_distribution(self, ncpu=1):
        """
        Pool region statistics over all chromosomes under every permuted labeling.

        A permutation is used or discarded as a whole: if any of its chromosomes fails, none of its statistics enter
        the pool.

        Returns:
            tuple: NullPool, PermutationPlan, number of permutations used and list of warnings.
        """
        plan = enumerate_permutations(self.labels, self.config.max_perms, self.config.seed, self.config.min_perms_warning,
                                      symmetric=self.config.symmetric_cutoff)
        warnings = []
        if plan.limited:
            warnings.append(f"Only {plan.n_possible} distinct permutations are available; the null distribution has "
                            f"limited resolution")

        units = [(chrom, perm.perm_id, perm.labels) for perm in plan.assignments for chrom in self.chromosomes]
        by_perm = {}
        for res in self.run_units(units, ncpu=ncpu):
            by_perm.setdefault(res.perm_id, []).append(res)

        pool = NullPool()
        n_used = 0
        n_fallback = 0
        for perm_id in sorted(by_perm):
            results = by_perm[perm_id]
            if any(res.failed for res in results):
                message = f"Permutation {perm_id} dropped: " + "; ".join(w for res in results if res.failed for w in res.warnings)
                logger.warning(message)
                warnings.append(message)
                continue
            fits = [fit for res in results for fit in res.fits]
            pool.add([region_statistic(fit, self.config.stat) for fit in fits])
            n_fallback += sum(fit.fallback for fit in fits)
            n_used += 1
        if n_fallback:
            logger.info(f"{n_fallback} permutation regions used the independence covariance")
        logger.info(f"Null distribution holds {len(pool)} statistics from {n_used} permutations")
        return pool, plan, n_used, warnings

    def call_dmrs(self, ncpu=1):
        """
        Detect candidate regions and assign permutation p-values and Benjamini-Hochberg q-values.

        Parameters:
            ncpu (int, default: 1): Number of CPU cores. Values > 1 process units of work as Ray tasks.

        Returns:
            DMRResults: Region records ordered by chromosome and position, with run warnings.

        Raises:
            EmptyNullPoolError: If observed regions exist but no permutation produced any region.
        """
        assert isinstance(ncpu, int) and ncpu > 0, "ncpu must be positive integer"
        ray_initialized = ray.is_initialized()
        if ncpu > 1 and not ray_initialized:
            ray.init(num_cpus=ncpu)
        try:
            return self._call_dmrs(ncpu)
        finally:
            if ncpu > 1 and not ray_initialized:
                ray.shutdown()

    def _call_dmrs(self, ncpu):
        fits, warnings = self.observed_regions(ncpu=ncpu)
        if not fits:
            warnings.append("No candidate regions found; permutations skipped")
            logger.warning(warnings[-1])
            return DMRResults([], warnings, config=self.config)

        n_fallback = sum(fit.fallback for fit in fits)
        if n_fallback:
            warnings.append(f"{n_fallback} of {len(fits)} regions used the independence covariance after the "
                            f"correlation fit failed")
            logger.warning(warnings[-1])

        pool, plan, n_used, perm_warnings = self.null_distribution(ncpu=ncpu)
        warnings += perm_warnings
        pvals = empirical_pvalues([region_statistic(fit, self.config.stat) for fit in fits], pool)
        qvals = bh_adjust(pvals)

        regions = [RegionRecord(
            chr=fit.region.chr,
            start=fit.region.start,
            end=fit.region.end,
            num_cpgs=fit.region.n_sites,
            area=fit.region.area,
            stat=fit.stat,
            pval=float(pval),
            qval=float(qval),
            beta=fit.beta,
            se=fit.se,
            avg=fit.region.avg,
            rho=fit.rho,
            fallback=fit.fallback,
        ) for fit, pval, qval in zip(fits, pvals, qvals)]
        return DMRResults(regions, warnings, n_used, len(pool), plan.limited, self.config)

    def copy(self):
        """
        Create a copy of the pyDMRObj instance.

        Returns:
            pyDMRObj: A copy of the current instance.
        """
        return copy.deepcopy(self)
