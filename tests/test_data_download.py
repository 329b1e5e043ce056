import numpy as np
import pandas as pd
import pytest

from config import PipelineConfig
from step1_data_download import WorldBankAPIError, WorldBankDownloader


class FakeResponse:
    def __init__(self, payload):
        self.payload = payload

    def raise_for_status(self):
        pass

    def json(self):
        return self.payload


class FakeSession:
    """Answers World Bank API calls from canned payloads keyed by (path suffix, page)."""

    def __init__(self, payloads):
        self.payloads = payloads
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, dict(params or {})))
        key = url.rsplit("/v2/", 1)[1]
        page = (params or {}).get("page", 1)
        return FakeResponse(self.payloads[(key, page)])


def observation(iso3, year, value):
    return {
        "indicator": {"id": "X", "value": "X"},
        "country": {"id": iso3[:2], "value": iso3},
        "countryiso3code": iso3,
        "date": str(year),
        "value": value,
    }


@pytest.fixture
def small_config(tmp_path):
    return PipelineConfig(
        countries=("ARG", "BRA"),
        download_start_year=2000,
        start_year=2000,
        end_year=2001,
        indicator_renames={"FP.CPI.TOTL.ZG": "WDI_02", "GFDD.DI.01": "GFD_01"},
        indicator_sources={"GFDD.DI.01": 32},
        input_files={"wb_raw": tmp_path / "input" / "raw.csv", "populism": tmp_path / "pop.csv"},
    )


def country_payload():
    return [
        {"page": 1, "pages": 1, "per_page": 1000, "total": 2},
        [
            {"id": "ARG", "name": "Argentina", "region": {"id": "LCN"}, "incomeLevel": {"id": "UMC"},
             "lendingType": {"id": "IBD"}},
            {"id": "BRA", "name": "Brazil", "region": {"id": "LCN"}, "incomeLevel": {"id": "UMC"},
             "lendingType": {"id": "IBD"}},
        ],
    ]


def standard_payloads():
    return {
        ("country/ARG;BRA", 1): country_payload(),
        ("country/ARG;BRA/indicator/FP.CPI.TOTL.ZG", 1): [
            {"page": 1, "pages": 2, "per_page": 2, "total": 4},
            [observation("ARG", 2000, -0.9), observation("ARG", 2001, -1.1)],
        ],
        ("country/ARG;BRA/indicator/FP.CPI.TOTL.ZG", 2): [
            {"page": 2, "pages": 2, "per_page": 2, "total": 4},
            [observation("BRA", 2000, 7.0), observation("BRA", 2001, None)],
        ],
        ("country/ARG;BRA/indicator/GFDD.DI.01", 1): [
            {"page": 1, "pages": 1, "per_page": 1000, "total": 3},
            [observation("ARG", 2000, 23.0), observation("BRA", 2000, 30.5), observation("BRA", 2001, 31.0)],
        ],
    }


def test_fetch_indicator_follows_pages(small_config):
    session = FakeSession(standard_payloads())
    downloader = WorldBankDownloader(small_config, session=session)

    data = downloader.fetch_indicator("FP.CPI.TOTL.ZG")

    assert list(data["country_code"]) == ["ARG", "ARG", "BRA", "BRA"]
    assert data["value"].isna().tolist() == [False, False, False, True]
    assert [params["page"] for _, params in session.calls] == [1, 2]
    assert session.calls[0][1]["date"] == "2000:2001"
    assert session.calls[0][1]["source"] == 2


def test_download_builds_wide_table(small_config):
    session = FakeSession(standard_payloads())
    downloader = WorldBankDownloader(small_config, session=session)

    raw = downloader.download()

    assert list(raw[["country_code", "year"]].itertuples(index=False, name=None)) == [
        ("ARG", 2000), ("ARG", 2001), ("BRA", 2000), ("BRA", 2001),
    ]
    assert set(["country_name", "region", "FP.CPI.TOTL.ZG", "GFDD.DI.01"]) <= set(raw.columns)
    assert (raw["region"] == "LCN").all()
    # GFDD series is requested from source 32
    gfdd_call = [params for url, params in session.calls if url.endswith("GFDD.DI.01")][0]
    assert gfdd_call["source"] == 32
    arg_2001 = raw[(raw["country_code"] == "ARG") & (raw["year"] == 2001)].iloc[0]
    assert np.isnan(arg_2001["GFDD.DI.01"])
    assert arg_2001["FP.CPI.TOTL.ZG"] == pytest.approx(-1.1)


def test_download_keeps_empty_indicator_column(small_config):
    payloads = standard_payloads()
    payloads[("country/ARG;BRA/indicator/GFDD.DI.01", 1)] = [
        {"page": 1, "pages": 1, "per_page": 1000, "total": 0},
        None,
    ]
    downloader = WorldBankDownloader(small_config, session=FakeSession(payloads))

    raw = downloader.download()

    assert "GFDD.DI.01" in raw.columns
    assert raw["GFDD.DI.01"].isna().all()


def test_api_error_message_raises(small_config):
    payloads = {
        ("country/ARG;BRA", 1): [
            {"message": [{"id": "120", "key": "Invalid value", "value": "The provided parameter value is not valid"}]}
        ],
    }
    downloader = WorldBankDownloader(small_config, session=FakeSession(payloads))

    with pytest.raises(WorldBankAPIError, match="not valid"):
        downloader.fetch_country_metadata()


def test_save_writes_csv(small_config):
    downloader = WorldBankDownloader(small_config, session=FakeSession(standard_payloads()))
    raw = downloader.download()

    path = downloader.save(raw)

    assert path == small_config.input_files["wb_raw"]
    reloaded = pd.read_csv(path)
    assert reloaded.shape == raw.shape
