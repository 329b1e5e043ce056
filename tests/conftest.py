import numpy as np
import pandas as pd
import pytest

from config import PipelineConfig

LCN_COUNTRIES = {
    "ARG": "Argentina",
    "BRA": "Brazil",
    "CHL": "Chile",
    "ECU": "Ecuador",
    "PAN": "Panama",
    "SLV": "El Salvador",
}


@pytest.fixture
def config(tmp_path):
    output_path = tmp_path / "output"
    output_path.mkdir()
    return PipelineConfig(
        output_path=output_path,
        input_files={
            "wb_raw": tmp_path / "input" / "worldbank_raw.csv",
            "populism": tmp_path / "input" / "populism_index.csv",
        },
        countries=tuple(LCN_COUNTRIES) + ("USA",),
        download_start_year=2000,
        start_year=2002,
        end_year=2010,
        n_bootstrap=5,
    )


def make_raw_worldbank(config, seed=0):
    """Wide World Bank table: six LCN countries plus one country outside the region."""
    rng = np.random.RandomState(seed)
    countries = dict(LCN_COUNTRIES, USA="United States")
    rows = []
    for code, name in countries.items():
        for year in range(config.download_start_year, config.end_year + 1):
            row = {
                "country_code": code,
                "country_name": name,
                "region": "NAC" if code == "USA" else "LCN",
                "income_level": "UMC",
                "lending_type": "IBD",
                "year": year,
            }
            for indicator in config.indicator_renames:
                row[indicator] = rng.normal(50, 10)
            rows.append(row)
    raw = pd.DataFrame(rows)
    raw.loc[(raw["country_code"] == "CHL") & (raw["year"] == 2004), "GFDD.DI.01"] = np.nan
    return raw


def make_populism(config, seed=1):
    """Populism table covering the LCN countries, baseline year included."""
    rng = np.random.RandomState(seed)
    rows = []
    for code in LCN_COUNTRIES:
        for year in range(config.download_start_year, config.end_year + 1):
            row = {"country_code": code, "year": year, "country": LCN_COUNTRIES[code], "source_note": "v2"}
            for field_name in config.populism_fields:
                row[field_name] = rng.uniform(0, 1)
            rows.append(row)
    populism = pd.DataFrame(rows)
    # One country-year with no populism scores at all
    populism.loc[(populism["country_code"] == "BRA") & (populism["year"] == 2006), list(config.populism_fields)] = np.nan
    return populism


@pytest.fixture
def raw_worldbank(config):
    return make_raw_worldbank(config)


@pytest.fixture
def populism(config):
    return make_populism(config)
