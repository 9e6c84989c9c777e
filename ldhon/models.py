"""
Model fitting for the LDH optic-nerve pipeline.

A small capability interface over statsmodels:

fit_model(formula, data, family, random)  -> FittedModel
predict(model, newdata)                   -> response-scale predictions
coef_table(model), anova_table(model)     -> fixed-effect tables

Gaussian models are linear mixed models (MixedLM, REML) with a random
intercept per animal and, optionally, a variance component for a factor
nested in animal (e.g. 'Animal:Type'). Count models use a log link and
account for repeated cells within an animal through a GEE with an
exchangeable working correlation; the negative-binomial dispersion is
estimated by maximum likelihood beforehand.
"""

import itertools
import warnings

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from scipy import stats
from statsmodels.regression.mixed_linear_model import MixedLMParams
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from .errors import ModelFitError

FAMILIES = ('gaussian', 'negative_binomial', 'poisson')

LINKS = {
    'gaussian': 'identity',
    'negative_binomial': 'log',
    'poisson': 'log',
}

# Variance (relative to the residual variance) used when a variance
# parameter has to be held at the edge of the parameter space
BOUNDARY_VARIANCE = 1e-6


class FittedModel:
    """
    A fitted model plus everything needed to predict from it.

    Attributes
    ----------
    result : statsmodels results object
    family : str
    link : str
        'identity' or 'log'.
    formula : str
    response : str
    group : str
        Grouping column of the random intercept.
    nested : str or None
        Factor whose levels get a variance component within each group.
    design_info : patsy.DesignInfo
        Encoding of the fixed effects, reused for new data.
    frame : pd.DataFrame
        Rows actually used in the fit.
    params : pd.Series
        Fixed-effect estimates.
    cov : pd.DataFrame
        Covariance of the fixed-effect estimates.
    alpha : float or None
        Negative-binomial dispersion (var = mu + alpha * mu**2).
    warnings : list of str
        Non-fatal messages raised while fitting (e.g. boundary fits).
    """

    def __init__(self, result, family, formula, response, group, nested,
                 design_info, frame, params, cov, alpha=None, messages=None,
                 nested_levels=None):
        self.result = result
        self.family = family
        self.link = LINKS[family]
        self.formula = formula
        self.response = response
        self.group = group
        self.nested = nested
        self.design_info = design_info
        self.frame = frame
        self.params = params
        self.cov = cov
        self.alpha = alpha
        self.warnings = list(messages or [])
        self.nested_levels = nested_levels or {}

    @property
    def is_mixed(self):
        return self.family == 'gaussian'

    @property
    def endog(self):
        return self.frame[self.response].to_numpy(dtype=float)

    def design(self, newdata):
        """Fixed-effect design matrix for new data."""
        (matrix,) = patsy.build_design_matrices(
            [self.design_info], newdata, NA_action='raise', return_type='dataframe'
        )
        return matrix

    def inverse_link(self, eta):
        return np.exp(eta) if self.link == 'log' else eta

    def random_effects(self, newdata):
        """Conditional random effects for each row of ``newdata`` (0 for unknown groups)."""
        offsets = np.zeros(len(newdata))
        if not self.is_mixed:
            return offsets

        ranef = self.result.random_effects
        groups = newdata[self.group].astype(str).to_numpy()
        nested = newdata[self.nested].astype(str).to_numpy() if self.nested else None

        for i, group in enumerate(groups):
            if group not in ranef:
                continue
            values = np.asarray(ranef[group], dtype=float)
            offsets[i] = values[0]
            if nested is not None:
                levels = self.nested_levels.get(group, [])
                if nested[i] in levels:
                    offsets[i] += values[1 + levels.index(nested[i])]
        return offsets

    def linear_predictor(self, newdata=None, include_random=False):
        if newdata is None:
            newdata = self.frame
        eta = self.design(newdata).to_numpy() @ self.params.to_numpy()
        if include_random:
            eta = eta + self.random_effects(newdata)
        return eta

    def fitted(self):
        """Response-scale fitted values of the rows used in the fit."""
        return np.asarray(self.result.fittedvalues, dtype=float)

    def summary(self):
        return self.result.summary()


def _split_formula(formula):
    if '~' not in formula:
        raise ValueError(f"Formula needs a response: '{formula}'")
    response, rhs = (part.strip() for part in formula.split('~', 1))
    return response, rhs


def _parse_random(random):
    """Return (group column, nested factor or None) from random-intercept terms."""
    if isinstance(random, str):
        random = [random]
    random = list(random)
    if not random:
        raise ValueError("At least one random-intercept grouping term is required")

    group = random[0]
    nested = None
    for term in random[1:]:
        parent, _, child = term.partition(':')
        if parent != group or not child:
            raise ValueError(f"Random term '{term}' must be nested in '{group}' (e.g. '{group}:Type')")
        nested = child
    return group, nested


def _relevant_messages(caught):
    skip = (DeprecationWarning, FutureWarning, PendingDeprecationWarning)
    messages = []
    for w in caught:
        if issubclass(w.category, skip):
            continue
        text = str(w.message)
        if text not in messages:
            messages.append(text)
    return messages


def _fixed_effect_cov(result, exog, groups, vc_mats=None):
    """(X' V^-1 X)^-1 at the estimated variance components."""
    scale = result.scale
    tau = float(np.asarray(result.cov_re)[0, 0])
    vcomp = float(np.asarray(result.vcomp).ravel()[0]) if vc_mats else 0.0

    k = exog.shape[1]
    information = np.zeros((k, k))
    for group, index in groups.groupby(groups, sort=False).groups.items():
        X = exog.loc[index].to_numpy()
        n = len(X)
        V = scale * np.eye(n) + tau * np.ones((n, n))
        if vc_mats:
            Z = vc_mats[group]
            V = V + vcomp * Z @ Z.T
        information += X.T @ np.linalg.solve(V, X)

    cov = np.linalg.inv(information)
    return pd.DataFrame(cov, index=exog.columns, columns=exog.columns)


def _fit_at_boundary(model):
    """REML fit with every variance parameter held at BOUNDARY_VARIANCE (relative to scale)."""
    start = MixedLMParams.from_components(
        fe_params=np.zeros(model.k_fe),
        cov_re=BOUNDARY_VARIANCE * np.eye(model.k_re),
        vcomp=np.full(model.k_vc, BOUNDARY_VARIANCE),
    )
    free = MixedLMParams.from_components(
        fe_params=np.ones(model.k_fe),
        cov_re=np.zeros((model.k_re, model.k_re)),
        vcomp=np.zeros(model.k_vc),
    )
    return model.fit(reml=True, start_params=start, free=free)


def _fit_mixed(endog, exog, groups, frame, nested):
    exog_vc = None
    nested_levels = {}
    if nested:
        mats = {}
        for group, sub in frame.groupby(groups.name, sort=False):
            dummies = pd.get_dummies(sub[nested].astype(str))
            nested_levels[group] = list(dummies.columns)
            mats[group] = dummies.to_numpy(dtype=float)
        exog_vc = {f"{groups.name}:{nested}": mats}

    # the random intercept must be explicit once variance components are given
    exog_re = np.ones((len(exog), 1))
    model = sm.MixedLM(endog, exog, groups=groups, exog_re=exog_re, exog_vc=exog_vc)
    try:
        result = model.fit(reml=True)
    except np.linalg.LinAlgError:
        # singular Hessian: the variance parameters are not identifiable
        # (e.g. one animal per genotype)
        warnings.warn(
            "Singular Hessian at the REML estimate; random-effect variances held at the boundary",
            ConvergenceWarning,
        )
        result = _fit_at_boundary(model)

    params = pd.Series(np.asarray(result.fe_params), index=exog.columns)
    cov = _fixed_effect_cov(result, exog, groups, exog_vc[f"{groups.name}:{nested}"] if nested else None)
    diagnostics = {
        'converged': result.converged,
        'method': getattr(result, 'method', None),
        'log-likelihood': result.llf,
        'random intercept variance': float(np.asarray(result.cov_re)[0, 0]),
        'residual variance': result.scale,
    }
    return result, params, cov, result.converged, diagnostics, nested_levels


def _fit_gee(endog, exog, groups, family, alpha):
    if family == 'negative_binomial':
        sm_family = sm.families.NegativeBinomial(alpha=alpha)
    else:
        sm_family = sm.families.Poisson()

    model = sm.GEE(endog, exog, groups=groups, family=sm_family,
                   cov_struct=sm.cov_struct.Exchangeable())
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always')
        result = model.fit()
    converged = not any(issubclass(w.category, ConvergenceWarning) for w in caught)

    params = pd.Series(np.asarray(result.params), index=exog.columns)
    cov = pd.DataFrame(np.asarray(result.cov_params()), index=exog.columns, columns=exog.columns)
    diagnostics = {
        'converged': converged,
        'iterations': len(getattr(result, 'fit_history', {}).get('params', [])),
        'working correlation': float(np.asarray(model.cov_struct.dep_params).ravel()[0]),
    }
    return result, params, cov, converged, diagnostics, _relevant_messages(caught)


def _estimate_alpha(endog, exog):
    """ML estimate of the NB2 dispersion from a negative-binomial GLM."""
    nb = sm.NegativeBinomial(endog, exog, loglike_method='nb2').fit(disp=0, maxiter=500)
    if not nb.mle_retvals.get('converged', True):
        raise ModelFitError(
            "Negative-binomial dispersion estimate did not converge",
            {'iterations': nb.mle_retvals.get('iterations'), 'log-likelihood': nb.llf},
        )
    return float(np.asarray(nb.params)[-1])


def fit_model(formula, data, family='gaussian', random=('Animal',)):
    """
    Fit a model with random intercepts (or clustering) per animal.

    Parameters
    ----------
    formula : str
        patsy formula, e.g. 'Density ~ Type * Genotype'.
    data : pd.DataFrame
        Long table containing the response, predictors and grouping columns.
    family : str
        'gaussian', 'negative_binomial' or 'poisson'.
    random : sequence of str
        Random-intercept terms, e.g. ['Animal'] or ['Animal', 'Animal:Type'].

    Returns
    -------
    FittedModel

    Raises
    ------
    ModelFitError
        If the optimiser reports that it did not converge, or the engine
        cannot fit the design at all.

    Example
    -------
    >>> model = fit_model('gRatio ~ AxonDiameter * Genotype', df, 'gaussian', ['Animal'])
    >>> anova_table(model)
    """
    if family not in FAMILIES:
        raise ValueError(f"Unknown family '{family}' (options: {', '.join(FAMILIES)})")

    response, rhs = _split_formula(formula)
    group, nested = _parse_random(random)
    if nested and family != 'gaussian':
        raise ValueError("Nested random intercepts are only supported for the gaussian family")

    frame = data.copy()
    frame[group] = frame[group].astype(str)
    if nested:
        frame[nested] = frame[nested].astype(str)

    endog, exog = patsy.dmatrices(f"{response} ~ {rhs}", frame, return_type='dataframe')
    design_info = exog.design_info
    frame = frame.loc[exog.index].reset_index(drop=True)
    endog = endog.iloc[:, 0].reset_index(drop=True)
    exog = exog.reset_index(drop=True)
    groups = frame[group]

    alpha = None
    nested_levels = {}
    gee_messages = []

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always')
        try:
            if family == 'gaussian':
                result, params, cov, converged, diagnostics, nested_levels = _fit_mixed(
                    endog, exog, groups, frame, nested
                )
            else:
                if family == 'negative_binomial':
                    alpha = _estimate_alpha(endog, exog)
                result, params, cov, converged, diagnostics, gee_messages = _fit_gee(
                    endog, exog, groups, family, alpha
                )
        except (np.linalg.LinAlgError, ValueError, IndexError) as e:
            raise ModelFitError(
                f"Model '{formula}' ({family}) failed: {e}",
                {'rows': len(frame), 'groups': groups.nunique(), 'fixed effects': exog.shape[1]},
            ) from e

    messages = _relevant_messages(caught)
    messages += [m for m in gee_messages if m not in messages]
    if not converged:
        diagnostics['formula'] = formula
        diagnostics['family'] = family
        diagnostics['warnings'] = '; '.join(messages) or 'none'
        raise ModelFitError(f"Model '{formula}' ({family}) did not converge", diagnostics)

    return FittedModel(
        result=result,
        family=family,
        formula=formula,
        response=response,
        group=group,
        nested=nested,
        design_info=design_info,
        frame=frame,
        params=params,
        cov=cov,
        alpha=alpha,
        messages=messages,
        nested_levels=nested_levels,
    )


def predict(model, newdata, include_random=True):
    """
    Predict on the response scale for new covariate rows.

    For mixed models, the fitted random intercept of each row's animal
    (and its nested component) is added when ``include_random`` is set;
    animals not seen in the fit get the population-level prediction.
    """
    eta = model.linear_predictor(newdata, include_random=include_random)
    return pd.Series(model.inverse_link(eta), index=newdata.index, name='prediction')


def coef_table(model):
    """Fixed-effect estimates with standard errors and Wald z tests."""
    se = np.sqrt(np.diag(model.cov.to_numpy()))
    estimate = model.params.to_numpy()
    with np.errstate(divide='ignore', invalid='ignore'):
        z = estimate / se
    return pd.DataFrame({
        'term': model.params.index,
        'estimate': estimate,
        'SE': se,
        'z_value': z,
        'p_value': 2 * stats.norm.sf(np.abs(z)),
    })


def reference_grid(model):
    """
    Every combination of categorical predictor levels, with numeric
    covariates held at their mean over the fitted rows.
    """
    levels = {}
    for factor, info in model.design_info.factor_infos.items():
        name = factor.name()
        if name not in model.frame.columns:
            raise ValueError(f"Cannot build a reference grid for expression '{name}'")
        if info.type == 'categorical':
            levels[name] = list(info.categories)
        else:
            levels[name] = [float(model.frame[name].mean())]

    names = list(levels)
    grid = pd.DataFrame(list(itertools.product(*levels.values())), columns=names)
    return grid, levels


def _term_hypothesis(model, term, grid, levels):
    """
    Rows of L for the joint test of one term.

    The term's effect is measured on the reference grid: numeric factors
    are differenced (a unit step, so slopes), the result is averaged
    equally over the factors not in the term, and its categorical
    factors are compared level against level.
    """
    names = [factor.name() for factor in term.factors]
    categorical = [n for n in names if isinstance(levels[n][0], str)]
    numeric = [n for n in names if n not in categorical]

    D = 0
    for r in range(len(numeric) + 1):
        for shifted_names in itertools.combinations(numeric, r):
            shifted = grid.copy()
            for n in shifted_names:
                shifted[n] = shifted[n] + 1.0
            D = D + (-1) ** (len(numeric) - r) * model.design(shifted).to_numpy()

    cells = []
    for combo in itertools.product(*(levels[n] for n in categorical)):
        mask = np.ones(len(grid), dtype=bool)
        for n, level in zip(categorical, combo):
            mask &= (grid[n] == level).to_numpy()
        cells.append(D[mask].mean(axis=0))

    K = np.ones((1, 1))
    for n in categorical:
        k = len(levels[n])
        K = np.kron(K, np.eye(k)[:-1] - np.eye(k)[-1])
    return K @ np.vstack(cells)


def anova_table(model):
    """
    Joint Wald chi-square tests for each fixed-effect term.

    Each term is tested through sum-to-zero contrasts on the reference
    grid (other factors averaged equally, covariates at their mean), so
    the table does not depend on the reference level of a factor or on
    the origin of a covariate.

    Returns
    -------
    pd.DataFrame
        Columns 'term', 'Chisq', 'Df' and 'Pr(>Chisq)'.
    """
    beta = model.params.to_numpy()
    cov = model.cov.to_numpy()
    grid, levels = reference_grid(model)

    rows = []
    for term in model.design_info.terms:
        if not term.factors:
            continue
        L = _term_hypothesis(model, term, grid, levels)
        df = int(np.linalg.matrix_rank(L))
        if df == 0:
            continue
        # keep an independent set of rows spanning the same hypothesis
        U, _, _ = np.linalg.svd(L, full_matrices=False)
        L = U[:, :df].T @ L
        b = L @ beta
        chisq = float(b @ np.linalg.pinv(L @ cov @ L.T) @ b)
        rows.append({
            'term': term.name(),
            'Chisq': chisq,
            'Df': df,
            'Pr(>Chisq)': stats.chi2.sf(chisq, df),
        })
    return pd.DataFrame(rows, columns=['term', 'Chisq', 'Df', 'Pr(>Chisq)'])
