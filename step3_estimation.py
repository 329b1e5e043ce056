"""
Step 3: Fixed-Effects Estimation and Cluster Bootstrap

PURPOSE:
Estimate how populism relates to financial development in Latin America.
For each dependent variable (a GFD indicator) and each specification in
``config.regression_specs`` the module runs

    y_it = b * populism_it + g * controls_it + country_i + e_it

where ``populism_it`` is either the three quadrant dummies (Control is the
baseline), the continuous PIP_z / PEP_z scores, or their one-year lags.
Controls are the configured WDI variables, the dollarization dummy and the
linear and quadratic time trends.

STATISTICAL APPROACH:
- Country fixed effects as country dummies (first country omitted)
- Standard errors clustered by country
- Cluster bootstrap: resample countries with replacement, each draw becomes
  its own cluster and its own fixed effect, re-estimate, and collect the
  coefficients. From the draws we report the bootstrap standard error, the
  95% percentile interval and the symmetric p-value mean(|b* - b| >= |b|).

Regressors without within-country variation (absorbed by the fixed effects,
e.g. dollarization after 2001) or collinear with earlier regressors are
dropped with a warning before estimation.
"""

import logging

import numpy as np
import pandas as pd
import statsmodels.api as sm
from tqdm import tqdm

from config import log_file_only

logger = logging.getLogger(__name__)

LAG_PREFIX = "L1_"


def add_lags(panel, columns, group="country_id", time="year"):
    """
    Add ``L1_<col>`` holding the previous year's value within each country.

    The lag is matched on year - 1, so a gap in a country's years gives a
    missing lag rather than the value of an older year.
    """
    panel = panel.copy()
    for col in columns:
        lagged = panel[[group, time, col]].copy()
        lagged[time] = lagged[time] + 1
        lagged = lagged.rename(columns={col: f"{LAG_PREFIX}{col}"})
        panel = panel.merge(lagged, on=[group, time], how="left", validate="one_to_one")
    return panel


def within_transform(frame, columns, group):
    """Deviations from group means (the fixed-effects within transformation)."""
    values = frame[columns]
    return values - values.groupby(frame[group]).transform("mean")


def identified_regressors(sample, regressors, group="country_id"):
    """Drop regressors absorbed by the fixed effects or collinear with earlier ones."""
    demeaned = within_transform(sample, regressors, group)
    selected = []
    for col in regressors:
        if np.allclose(demeaned[col].to_numpy(), 0.0):
            logger.warning(f"Dropping {col}: no within-country variation")
            continue
        candidate = demeaned[selected + [col]].to_numpy()
        if np.linalg.matrix_rank(candidate) > len(selected):
            selected.append(col)
        else:
            logger.warning(f"Dropping collinear regressor: {col}")
    return selected


def fit_fixed_effects(sample, dependent, regressors, fe_col="country_id", cluster_col=None):
    """
    OLS of ``dependent`` on ``regressors`` plus one dummy per ``fe_col`` value.

    With ``cluster_col`` the covariance is clustered on that column,
    otherwise the plain OLS covariance is used (bootstrap draws).
    """
    fe_dummies = pd.get_dummies(sample[fe_col], prefix="fe", drop_first=True, dtype=float)
    X = sm.add_constant(pd.concat([sample[regressors], fe_dummies], axis=1), has_constant="add")
    y = sample[dependent]
    model = sm.OLS(y, X)
    if cluster_col is not None:
        return model.fit(cov_type="cluster", cov_kwds={"groups": sample[cluster_col].to_numpy()})
    return model.fit()


def within_r2(results, sample, dependent, fe_col="country_id"):
    """R-squared of the within (demeaned) regression."""
    demeaned_y = within_transform(sample, [dependent], fe_col)[dependent]
    tss = float((demeaned_y ** 2).sum())
    return 1.0 - float(results.ssr) / tss if tss > 0 else np.nan


def bootstrap_statistics(draws, point_estimates):
    """
    Bootstrap SE, 95% percentile interval and symmetric p-value per term.

    ``draws`` is a DataFrame with one row per successful replication and one
    column per term; ``point_estimates`` a Series indexed by term.
    """
    rows = {}
    for term in point_estimates.index:
        values = draws[term].dropna().to_numpy()
        estimate = point_estimates[term]
        if len(values) < 2:
            rows[term] = {"boot_se": np.nan, "boot_ci_low": np.nan, "boot_ci_high": np.nan, "boot_p": np.nan}
            continue
        rows[term] = {
            "boot_se": values.std(ddof=1),
            "boot_ci_low": np.percentile(values, 2.5),
            "boot_ci_high": np.percentile(values, 97.5),
            "boot_p": np.mean(np.abs(values - estimate) >= abs(estimate)),
        }
    return pd.DataFrame.from_dict(rows, orient="index")


class PanelEstimation:
    """Fixed-effects regressions with cluster-bootstrap inference."""

    def __init__(self, config, panel=None):
        self.config = config
        self.data = panel
        self.results = []
        self.draws = {}

    def load_data(self):
        """Load the materialized panel."""
        path = self.config.output_file("panel_parquet")
        logger.info(f"Loading panel from {path}...")
        self.data = pd.read_parquet(path)
        logger.info(f"Panel loaded: {self.data.shape}")
        return self.data

    def prepare_data(self):
        """Add lagged regressors and convert model variables to plain floats."""
        lag_sources = sorted({
            col[len(LAG_PREFIX):]
            for regressors in self.config.regression_specs.values()
            for col in regressors
            if col.startswith(LAG_PREFIX)
        })
        data = add_lags(self.data, lag_sources)

        model_columns = set(self.config.dependent_variables) | set(self.config.control_variables)
        for regressors in self.config.regression_specs.values():
            model_columns.update(regressors)
        for col in sorted(model_columns):
            data[col] = pd.Series(
                data[col].to_numpy(dtype="float64", na_value=np.nan), index=data.index
            )
        self.data = data
        return data

    def estimation_sample(self, dependent, regressors):
        columns = [dependent] + regressors
        sample = self.data.dropna(subset=columns)
        return sample[["country_id", "year"] + columns].reset_index(drop=True)

    def run_regression(self, spec_name, dependent):
        """
        Estimate one specification and its cluster bootstrap.

        Returns a DataFrame with one row per populism/control term, or an
        empty DataFrame when the sample cannot identify the model.
        """
        populism_terms = list(self.config.regression_specs[spec_name])
        controls = [c for c in self.config.control_variables if c != dependent]
        sample = self.estimation_sample(dependent, populism_terms + controls)

        n_countries = sample["country_id"].nunique()
        if n_countries < 2 or len(sample) <= n_countries:
            logger.warning(
                f"{spec_name}/{dependent}: not enough data ({len(sample)} rows, {n_countries} countries); skipped"
            )
            return pd.DataFrame()

        regressors = identified_regressors(sample, populism_terms + controls)
        if not regressors:
            logger.warning(f"{spec_name}/{dependent}: every regressor absorbed by fixed effects; skipped")
            return pd.DataFrame()

        results = fit_fixed_effects(sample, dependent, regressors, cluster_col="country_id")
        r2 = within_r2(results, sample, dependent)
        log_file_only(f"{spec_name}/{dependent}: N={len(sample)}, countries={n_countries}, within R2={r2:.4f}")

        point = results.params[regressors]
        draws = self.bootstrap(sample, dependent, regressors, desc=f"Bootstrap {spec_name}/{dependent}")
        self.draws[(spec_name, dependent)] = draws
        boot = bootstrap_statistics(draws, point)

        table = pd.DataFrame({
            "spec": spec_name,
            "dependent": dependent,
            "term": regressors,
            "coef": point.to_numpy(),
            "se_cluster": results.bse[regressors].to_numpy(),
            "p_cluster": results.pvalues[regressors].to_numpy(),
        })
        table = table.join(boot, on="term")
        table["n_obs"] = len(sample)
        table["n_countries"] = n_countries
        table["r2_within"] = r2
        table["n_boot"] = len(draws)
        return table

    def bootstrap(self, sample, dependent, regressors, desc="Bootstrap"):
        """
        Cluster (pairs) bootstrap over countries.

        Each resampled country gets a new ``boot_cluster_id`` so that a
        country drawn twice contributes two separate fixed effects.
        """
        rng = np.random.RandomState(self.config.random_seed)
        countries = sample["country_id"].unique()
        by_country = {cid: frame for cid, frame in sample.groupby("country_id")}

        results_list = []
        for run in tqdm(range(1, self.config.n_bootstrap + 1), desc=desc, leave=False):
            sampled_countries = rng.choice(countries, size=len(countries), replace=True)
            bootstrap_data = []
            for cluster_counter, country in enumerate(sampled_countries):
                country_data = by_country[country].copy()
                country_data["boot_cluster_id"] = cluster_counter
                bootstrap_data.append(country_data)
            bootstrap_sample = pd.concat(bootstrap_data, ignore_index=True)

            try:
                fit = fit_fixed_effects(bootstrap_sample, dependent, regressors, fe_col="boot_cluster_id")
            except (ValueError, np.linalg.LinAlgError) as e:
                logger.warning(f"Bootstrap run {run} failed: {e}")
                continue
            row = {"run": run}
            row.update(fit.params[regressors].to_dict())
            results_list.append(row)

        return pd.DataFrame(results_list, columns=["run"] + list(regressors))

    def run_all(self):
        logger.info("Running fixed-effects regressions...")
        tables = []
        for spec_name in self.config.regression_specs:
            for dependent in self.config.dependent_variables:
                logger.info(f"Estimating {spec_name} model for {dependent}")
                table = self.run_regression(spec_name, dependent)
                if not table.empty:
                    tables.append(table)
        self.results = pd.concat(tables, ignore_index=True) if tables else pd.DataFrame()
        return self.results

    def save_results(self):
        path = self.config.output_file("regression_results")
        self.results.to_csv(path, index=False, float_format="%.8f")
        logger.info(f"Regression results saved to {path}")

        for (spec_name, dependent), draws in self.draws.items():
            draws_path = self.config.output_file("bootstrap_draws", spec=spec_name, dependent=dependent)
            draws_path.parent.mkdir(parents=True, exist_ok=True)
            draws.to_csv(draws_path, index=False, float_format="%.8f")
        logger.info(f"Bootstrap draws saved for {len(self.draws)} models")


def run_step3(config, panel=None):
    """Run Step 3: Fixed-Effects Estimation."""
    logger.info("Starting Step 3: Fixed-Effects Estimation")

    processor = PanelEstimation(config, panel=panel)
    if panel is None:
        processor.load_data()
    processor.prepare_data()
    results = processor.run_all()
    processor.save_results()

    logger.info("Step 3 completed successfully")
    return results
