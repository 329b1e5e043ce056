import logging

import numpy as np
import pandas as pd
import pytest

from config import PipelineConfig
from step3_estimation import (
    PanelEstimation,
    add_lags,
    bootstrap_statistics,
    fit_fixed_effects,
    identified_regressors,
    within_r2,
    within_transform,
)


@pytest.fixture
def synthetic_panel():
    """y = 1.5 * PIP_z - 0.5 * PEP_z + country effect + noise."""
    rng = np.random.RandomState(42)
    rows = []
    for country_id in range(1, 9):
        effect = rng.normal(0, 5)
        for year in range(2002, 2014):
            pip = rng.normal()
            pep = rng.normal()
            rows.append({
                "country_id": country_id,
                "country_code": f"C{country_id:02d}",
                "year": year,
                "PIP_z": pip,
                "PEP_z": pep,
                "GFD_01": 1.5 * pip - 0.5 * pep + effect + rng.normal(0, 0.1),
                "time_trend": year - 2002,
                "dollarized": 1 if country_id == 3 else 0,
            })
    return pd.DataFrame(rows)


@pytest.fixture
def estimation_config(tmp_path):
    return PipelineConfig(
        output_path=tmp_path,
        dependent_variables=("GFD_01",),
        control_variables=("time_trend", "dollarized"),
        regression_specs={"continuous": ["PIP_z", "PEP_z"]},
        n_bootstrap=20,
        random_seed=123,
    )


def test_add_lags_matches_previous_year():
    panel = pd.DataFrame({
        "country_id": [1, 1, 1, 2, 2],
        "year": [2002, 2003, 2005, 2002, 2003],
        "PIP_z": [1.0, 2.0, 3.0, 10.0, 20.0],
    })
    result = add_lags(panel, ["PIP_z"])

    assert result["L1_PIP_z"].tolist()[1] == 1.0
    assert result["L1_PIP_z"].tolist()[4] == 10.0
    # first year and the year after a gap have no lag
    assert result["L1_PIP_z"].isna().tolist() == [True, False, True, True, False]


def test_within_transform_removes_group_means():
    frame = pd.DataFrame({"g": [1, 1, 2, 2], "x": [1.0, 3.0, 10.0, 14.0]})
    assert within_transform(frame, ["x"], "g")["x"].tolist() == [-1.0, 1.0, -2.0, 2.0]


def test_identified_regressors_drops_absorbed_and_collinear(synthetic_panel, caplog):
    sample = synthetic_panel.copy()
    sample["PIP_copy"] = 2 * sample["PIP_z"]

    with caplog.at_level(logging.WARNING):
        kept = identified_regressors(sample, ["PIP_z", "dollarized", "PIP_copy", "PEP_z"])

    assert kept == ["PIP_z", "PEP_z"]
    assert "dollarized" in caplog.text
    assert "PIP_copy" in caplog.text


def test_fixed_effects_recovers_coefficients(synthetic_panel):
    results = fit_fixed_effects(synthetic_panel, "GFD_01", ["PIP_z", "PEP_z"], cluster_col="country_id")

    assert results.params["PIP_z"] == pytest.approx(1.5, abs=0.05)
    assert results.params["PEP_z"] == pytest.approx(-0.5, abs=0.05)
    assert results.cov_type == "cluster"
    assert within_r2(results, synthetic_panel, "GFD_01") > 0.95


def test_bootstrap_statistics():
    draws = pd.DataFrame({"b": [0.5, 1.0, 1.5, 2.0, 2.5]})
    stats = bootstrap_statistics(draws, pd.Series({"b": 1.5}))

    assert stats.loc["b", "boot_se"] == pytest.approx(np.std([0.5, 1.0, 1.5, 2.0, 2.5], ddof=1))
    assert stats.loc["b", "boot_ci_low"] == pytest.approx(np.percentile([0.5, 1.0, 1.5, 2.0, 2.5], 2.5))
    # |b* - 1.5| >= 1.5 never holds
    assert stats.loc["b", "boot_p"] == 0.0


def test_bootstrap_statistics_zero_estimate_has_p_one():
    draws = pd.DataFrame({"b": [-0.2, 0.1, 0.3]})
    stats = bootstrap_statistics(draws, pd.Series({"b": 0.0}))
    assert stats.loc["b", "boot_p"] == 1.0


def test_bootstrap_statistics_too_few_draws():
    stats = bootstrap_statistics(pd.DataFrame({"b": [1.0]}), pd.Series({"b": 1.0}))
    assert np.isnan(stats.loc["b", "boot_se"])


def test_run_regression_table(synthetic_panel, estimation_config):
    processor = PanelEstimation(estimation_config, panel=synthetic_panel)
    processor.prepare_data()

    table = processor.run_regression("continuous", "GFD_01")

    assert table["term"].tolist() == ["PIP_z", "PEP_z", "time_trend"]
    pip = table.set_index("term").loc["PIP_z"]
    assert pip["coef"] == pytest.approx(1.5, abs=0.05)
    assert pip["boot_ci_low"] <= pip["coef"] <= pip["boot_ci_high"]
    assert pip["boot_p"] == 0.0
    assert pip["n_obs"] == len(synthetic_panel)
    assert pip["n_countries"] == 8
    assert pip["n_boot"] == 20


def test_bootstrap_is_reproducible(synthetic_panel, estimation_config):
    draws = []
    for _ in range(2):
        processor = PanelEstimation(estimation_config, panel=synthetic_panel)
        processor.prepare_data()
        processor.run_regression("continuous", "GFD_01")
        draws.append(processor.draws[("continuous", "GFD_01")])

    pd.testing.assert_frame_equal(draws[0], draws[1])


def test_listwise_deletion(synthetic_panel, estimation_config):
    panel = synthetic_panel.copy()
    panel.loc[[0, 1, 2], "PIP_z"] = np.nan
    processor = PanelEstimation(estimation_config, panel=panel)
    processor.prepare_data()

    table = processor.run_regression("continuous", "GFD_01")

    assert (table["n_obs"] == len(panel) - 3).all()


def test_unidentified_model_is_skipped(synthetic_panel, estimation_config):
    panel = synthetic_panel[synthetic_panel["country_id"] == 1]
    processor = PanelEstimation(estimation_config, panel=panel)
    processor.prepare_data()

    assert processor.run_regression("continuous", "GFD_01").empty


def test_run_all_and_save(synthetic_panel, estimation_config):
    config = estimation_config.with_overrides(
        regression_specs={"continuous": ["PIP_z", "PEP_z"], "continuous_lag": ["L1_PIP_z", "L1_PEP_z"]},
        n_bootstrap=5,
    )
    processor = PanelEstimation(config, panel=synthetic_panel)
    processor.prepare_data()

    results = processor.run_all()
    processor.save_results()

    assert set(results["spec"]) == {"continuous", "continuous_lag"}
    lag_rows = results[results["spec"] == "continuous_lag"]
    # the first year of each country has no lag
    assert (lag_rows["n_obs"] == len(synthetic_panel) - 8).all()
    saved = pd.read_csv(config.output_file("regression_results"))
    assert len(saved) == len(results)
    assert config.output_file("bootstrap_draws", spec="continuous_lag", dependent="GFD_01").exists()
