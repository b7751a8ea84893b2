import warnings
import numpy as np
from scipy.linalg import cholesky, solve_triangular, LinAlgError
from scipy.optimize import minimize_scalar, OptimizeResult
from pyMethDMR.smooth import arcsine_transform

def _failed(p, message):
    res = OptimizeResult()
    res.x = np.repeat(np.nan, p)
    res.se_beta = np.repeat(np.nan, p)
    res.rho = np.nan
    res.sigma2 = np.nan
    res.success = False
    res.fallback = False
    res.nit = 0
    res.message = message
    return res

def car1_correlation(distances, rho):
    """Continuous AR(1) correlation rho**d between sites d spacings apart."""
    if rho == 0:
        return np.eye(distances.shape[0])
    return rho ** distances

def _whiten(Z, X, weights, chol):
    """
    Decorrelate observations of every sample with the shared Cholesky factor of the site correlation.

    Var(y_j) = sigma2 * S_j R S_j with S_j = diag(1/sqrt(w_j)), so L^-1 S_j^-1 y_j has covariance sigma2 * I.
    """
    J, L, p = X.shape
    sw = np.sqrt(weights)
    Zw = (sw * Z).T
    Xw = (sw[:, :, None] * X).transpose(1, 0, 2).reshape(L, J * p)
    Zs = solve_triangular(chol, Zw, lower=True).T.reshape(J * L)
    Xs = solve_triangular(chol, Xw, lower=True).reshape(L, J, p).transpose(1, 0, 2).reshape(J * L, p)
    return Zs, Xs

def _profile(Z, X, weights, distances, rho):
    """Weighted least squares pieces and restricted log-likelihood (up to a constant) at a fixed rho."""
    J, L, p = X.shape
    chol = cholesky(car1_correlation(distances, rho), lower=True)
    Zs, Xs = _whiten(Z, X, weights, chol)
    XtX = Xs.T @ Xs
    beta = np.linalg.solve(XtX, Xs.T @ Zs)
    rss = np.sum((Zs - Xs @ beta)**2)
    df = J * L - p
    logdet_R = 2 * np.sum(np.log(np.diag(chol)))
    logdet_XtX = np.linalg.slogdet(XtX)[1]
    reml = -0.5 * (df * np.log(rss / df) + J * logdet_R + logdet_XtX)
    return beta, XtX, rss, df, reml

def gls_car1(Z, X, weights, distances, rho=None, max_iter=100, tol=1e-6, max_rho=0.99):
    """
    Generalized least squares with a continuous AR(1) correlation between sites, nested within samples.

    Observations of sample j at the L sites of a region have covariance sigma2 * S_j R S_j, where
    S_j = diag(1/sqrt(weights_j)) carries the coverage precision and R_ab = rho**distances_ab. Samples are
    independent. rho is estimated by maximising the profiled restricted likelihood over [0, max_rho].

    Parameters:
        Z (2D numpy array): Responses, samples x sites.
        X (3D numpy array): Design, samples x sites x parameters.
        weights (2D numpy array): Precision weight of each observation, samples x sites.
        distances (2D numpy array): Scaled distances between sites, sites x sites.
        rho (float or None, default: None): Fix the correlation instead of estimating it.
        max_iter (int, default: 100): Iteration cap of the bounded scalar optimisation of rho.
        tol (float, default: 1e-6): Absolute tolerance on rho.
        max_rho (float, default: 0.99): Upper bound of rho.

    Returns:
        scipy.optimize.OptimizeResult: x (coefficients), se_beta (standard errors), rho, sigma2,
        success (rho fit converged), fallback (independence covariance used after a failed correlation fit),
        nit and message.
    """
    J, L, p = X.shape
    if J * L - p < 1:
        return _failed(p, "Not enough degrees of freedom. Require more observations than parameters.")

    fallback = False
    success = True
    nit = 0
    message = "gls completed successfully."
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', RuntimeWarning)
        if rho is None:
            if L == 1:
                rho = 0.0
            else:
                def objective(r):
                    try:
                        return -_profile(Z, X, weights, distances, r)[4]
                    except (LinAlgError, np.linalg.LinAlgError):
                        return np.inf
                opt = minimize_scalar(objective, bounds=(0.0, max_rho), method='bounded',
                                      options={'maxiter': max_iter, 'xatol': tol})
                nit = opt.nfev
                rho = float(opt.x)
                if not opt.success or not np.isfinite(opt.fun):
                    success = False
                    message = f"Correlation fit did not converge ({opt.message}); using independence covariance."
        try:
            beta, XtX, rss, df, _ = _profile(Z, X, weights, distances, rho)
        except (LinAlgError, np.linalg.LinAlgError):
            success = False
            message = "Correlation matrix is not positive definite; using independence covariance."
        if not success:
            fallback = True
            rho = 0.0
            try:
                beta, XtX, rss, df, _ = _profile(Z, X, weights, distances, rho)
            except (LinAlgError, np.linalg.LinAlgError):
                return _failed(p, "Unable to solve the independence fit.")

        if not np.isfinite(rss) or rss <= 1e-12 * max(1.0, float(Z.size)):
            res = _failed(p, "Residual variance is zero; the statistic is undefined.")
            res.x = beta
            return res
        sigma2 = rss / df
        cov = sigma2 * np.linalg.inv(XtX)
        se_beta = np.sqrt(np.diag(cov))

    res = OptimizeResult()
    res.x = beta
    res.se_beta = se_beta
    res.rho = rho
    res.sigma2 = sigma2
    res.success = success
    res.fallback = fallback
    res.nit = nit
    res.message = message
    return res

class FitRegion:
    def __init__(self, meth, coverage, genomic_positions, X, test_idx=1, c0=0.1):
        """
        meth:              (n_cpgs x n_samples) methylated counts of the region
        coverage:          (n_cpgs x n_samples) total reads of the region
        genomic_positions: (n_cpgs,) sorted positions of the region's cpgs
        X:                 (n_samples x p) sample design with intercept in column 0
        test_idx:          column of X holding the condition indicator
        """
        self.meth = np.asarray(meth, dtype='float64')
        self.coverage = np.asarray(coverage, dtype='float64')
        self.positions = np.asarray(genomic_positions, dtype='float64')
        self.X = np.asarray(X, dtype='float64')
        self.n_cpgs, self.n_samples = self.meth.shape
        self.test_idx = test_idx
        self.Z = arcsine_transform(self.meth, self.coverage, c0).T # Transformed methylation proportions, samples x cpgs

        # Site intercepts need L*J - (L + p - 1) residual degrees of freedom; below 2 use one shared intercept
        q = self.X.shape[1]
        self.site_effects = self.n_cpgs > 1 and self.n_cpgs * self.n_samples - (self.n_cpgs + q - 1) >= 2
        if self.site_effects:
            sites = np.broadcast_to(np.eye(self.n_cpgs), (self.n_samples, self.n_cpgs, self.n_cpgs))
            covs = np.broadcast_to(self.X[:, None, 1:], (self.n_samples, self.n_cpgs, q - 1))
            self.design = np.concatenate([sites, covs], axis=2)
            self.coef_idx = self.n_cpgs + test_idx - 1
        else:
            self.design = np.broadcast_to(self.X[:, None, :], (self.n_samples, self.n_cpgs, q)).copy()
            self.coef_idx = test_idx

        spacing = np.median(np.diff(self.positions)) if self.n_cpgs > 1 else 1.0
        self.scale = spacing if spacing > 0 else 1.0
        self.distances = np.abs(self.positions[:, None] - self.positions[None, :]) / self.scale

        # Final params set to none until fit
        self.beta = None
        self.se = None
        self.stat = None
        self.rho = None
        self.converged = None
        self.fallback = None
        self.fit_out = None

    def fit(self, max_iter=100, tol=1e-6, max_rho=0.99, rho=None):
        """
        Fit the region model and compute the Wald statistic of the condition coefficient.

        Returns:
            scipy.optimize.OptimizeResult: Result of gls_car1 with beta, se and stat of the condition coefficient added.
        """
        res = gls_car1(self.Z, self.design, self.coverage.T, self.distances, rho=rho,
                       max_iter=max_iter, tol=tol, max_rho=max_rho)
        res.beta = res.x[self.coef_idx]
        res.se = res.se_beta[self.coef_idx]
        if np.isfinite(res.se) and res.se > 0:
            res.stat = res.beta / res.se
        else:
            res.stat = np.nan
        self.fit_out = res
        self.beta = res.beta
        self.se = res.se
        self.stat = res.stat
        self.rho = res.rho
        self.converged = res.success
        self.fallback = res.fallback
        return res
