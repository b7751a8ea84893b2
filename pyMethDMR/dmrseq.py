import logging
from pyMethDMR.filter import filter_loci
from pyMethDMR.pyDMRObj import pyDMRObj

logger = logging.getLogger(__name__)

def dmrseq(meth,coverage,chr,genomic_positions,condition,covs=None,filter_zero_coverage=True,ncpu=1,config=None,**config_kwargs):
    """
    Detect differentially methylated regions between two conditions from bisulfite sequencing counts.

    The coverage weighted condition difference at each cpg is smoothed along each chromosome, contiguous runs
    beyond the cutoff become candidate regions, and each region is tested with a regression whose errors are
    correlated between nearby cpgs. Significance is calibrated against region statistics pooled over all
    chromosomes from permutations of the condition labels.

    Parameters:
        meth (2D numpy array): Count table of methylated reads at each cpg (rows) for each sample (columns).
        coverage (2D numpy array): Count table of total reads at each cpg (rows) for each sample (columns).
        chr (1D array): Chromosome of each cpg, each chromosome stored contiguously.
        genomic_positions (1D numpy array): Position of each cpg, sorted ascending within each chromosome.
        condition (1D array): Condition label of each sample, two distinct values with at least two samples each.
        covs (optional: pandas dataframe): Adjustment covariates, one row per sample.
        filter_zero_coverage (boolean, default: True): Drop cpgs with zero coverage in any sample before testing.
            If False such cpgs raise DMRInputError.
        ncpu (integer, default: 1): Number of cpus to use. If > 1 will use a parallel backend with Ray.
        config (optional: DMRConfig): Run settings.
        **config_kwargs: Overrides of individual DMRConfig settings, e.g. cutoff=0.05, max_perms=20.

    Returns:
        DMRResults: Called regions ordered by chromosome and start, with p-values, q-values and run warnings.
            Use .to_dataframe() for a pandas dataframe.
    """
    if filter_zero_coverage:
        meth,coverage,chr,genomic_positions,_ = filter_loci(meth,coverage,chr,genomic_positions)
    obj = pyDMRObj(meth,coverage,chr,genomic_positions,condition,covs=covs,config=config,**config_kwargs)
    logger.info(f"Testing {obj.ncpgs} cpgs on {len(obj.chromosomes)} chromosomes in {obj.nsamples} samples")
    return obj.call_dmrs(ncpu=ncpu)

def get_significant(res,alpha=0.05):
    """
    Gets the regions whose q-value is at or below alpha.

    Parameters:
        res (DMRResults or pandas dataframe): Results from running dmrseq.
        alpha (float): qval threshold below which results are considered statistically significant.

    Returns:
        pandas dataframe: Significant regions.
    """
    if not hasattr(res, 'to_dataframe'):
        return res[res["qval"] <= alpha].reset_index(drop=True)
    return res.significant(alpha)
