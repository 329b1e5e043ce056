"""
Step 1: World Bank Data Download

PURPOSE:
Retrieve the raw country-year indicators used to build the panel: financial
development series from the Global Financial Development database (GFDD,
API source 32) and macro controls from the World Development Indicators
(WDI, API source 2), together with each country's World Bank region.

OUTPUT:
One wide CSV with a row per (country_code, year) and a column per indicator
code, plus the country metadata columns ``country_name``, ``region``,
``income_level`` and ``lending_type``. Values missing in the API stay empty.

API:
https://api.worldbank.org/v2/country/{codes}/indicator/{code}?format=json
Responses are ``[page_info, rows]``; errors come back as ``[{"message": ...}]``.
"""

import logging

import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from tqdm import tqdm
from urllib3.util.retry import Retry

from config import DEFAULT_SOURCE

logger = logging.getLogger(__name__)

WB_API_URL = "https://api.worldbank.org/v2"
PER_PAGE = 1000
REQUEST_TIMEOUT = 30


class WorldBankAPIError(RuntimeError):
    """The World Bank API answered with an error message instead of data."""


def create_session():
    """Requests session that retries failed connections with backoff."""
    session = requests.Session()
    retry = Retry(connect=3, read=3, backoff_factor=0.5, status_forcelist=(500, 502, 503, 504))
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class WorldBankDownloader:
    """Download indicator panels for a fixed set of countries."""

    def __init__(self, config, session=None):
        self.config = config
        self.session = session if session is not None else create_session()
        self.country_path = ";".join(config.countries)

    def _get_json(self, url, params):
        response = self.session.get(url, params=params, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
        payload = response.json()
        if isinstance(payload, list) and payload and "message" in payload[0]:
            messages = "; ".join(
                str(m.get("value") or m.get("key")) for m in payload[0]["message"]
            )
            raise WorldBankAPIError(f"World Bank API error for {url}: {messages}")
        if not isinstance(payload, list) or len(payload) < 2:
            raise WorldBankAPIError(f"Unexpected World Bank API response for {url}")
        return payload[0], payload[1] or []

    def _get_all_pages(self, url, params):
        """Follow the API's pagination and return every row."""
        params = dict(params, format="json", per_page=PER_PAGE, page=1)
        page_info, rows = self._get_json(url, params)
        all_rows = list(rows)
        n_pages = int(page_info.get("pages") or 1)
        for page in range(2, n_pages + 1):
            params["page"] = page
            _, rows = self._get_json(url, params)
            all_rows.extend(rows)
        return all_rows

    def fetch_country_metadata(self):
        """Name, region and income group for each configured country."""
        url = f"{WB_API_URL}/country/{self.country_path}"
        rows = self._get_all_pages(url, {})
        records = []
        for item in rows:
            records.append({
                "country_code": item.get("id"),
                "country_name": item.get("name"),
                "region": (item.get("region") or {}).get("id"),
                "income_level": (item.get("incomeLevel") or {}).get("id"),
                "lending_type": (item.get("lendingType") or {}).get("id"),
            })
        metadata = pd.DataFrame(
            records,
            columns=["country_code", "country_name", "region", "income_level", "lending_type"],
        )
        logger.info(f"Country metadata downloaded for {len(metadata)} countries")
        return metadata

    def fetch_indicator(self, indicator_code, source_id=DEFAULT_SOURCE):
        """Long table ``country_code, year, value`` for one indicator."""
        url = f"{WB_API_URL}/country/{self.country_path}/indicator/{indicator_code}"
        params = {
            "date": f"{self.config.download_start_year}:{self.config.end_year}",
            "source": source_id,
        }
        rows = self._get_all_pages(url, params)

        records = []
        for item in rows:
            code = item.get("countryiso3code") or (item.get("country") or {}).get("id")
            date = item.get("date")
            if not code or date is None:
                continue
            try:
                year = int(date)
            except ValueError:
                continue
            value = item.get("value")
            records.append({
                "country_code": code,
                "year": year,
                "value": float(value) if value is not None else None,
            })

        data = pd.DataFrame(records, columns=["country_code", "year", "value"])
        data = data.astype({"year": "int64", "value": "float64"})
        logger.debug(f"{indicator_code}: {len(data)} rows, {data['value'].notna().sum()} non-missing")
        return data

    def download(self):
        """
        Download every configured indicator and return the raw wide table.

        Rows are the union of country-years returned by any indicator; the
        table is sorted by (country_code, year).
        """
        logger.info(
            f"Downloading {len(self.config.indicator_renames)} indicators for "
            f"{len(self.config.countries)} countries "
            f"({self.config.download_start_year}-{self.config.end_year})"
        )
        metadata = self.fetch_country_metadata()

        long_frames = []
        for indicator_code in tqdm(self.config.indicator_renames, desc="World Bank indicators"):
            source_id = self.config.indicator_sources.get(indicator_code, DEFAULT_SOURCE)
            data = self.fetch_indicator(indicator_code, source_id)
            data["indicator"] = indicator_code
            long_frames.append(data)

        long_data = pd.concat(long_frames, ignore_index=True)
        duplicated = long_data.duplicated(["country_code", "year", "indicator"])
        if duplicated.any():
            logger.warning(f"Dropping {duplicated.sum()} duplicated indicator observations")
            long_data = long_data[~duplicated]

        wide = long_data.pivot(
            index=["country_code", "year"], columns="indicator", values="value"
        ).reset_index()
        wide.columns.name = None

        # Indicators with no observations at all still get a column
        for indicator_code in self.config.indicator_renames:
            if indicator_code not in wide.columns:
                logger.warning(f"Indicator {indicator_code} returned no data")
                wide[indicator_code] = float("nan")

        raw = metadata.merge(wide, on="country_code", how="right", validate="one_to_many")
        raw = raw.sort_values(["country_code", "year"]).reset_index(drop=True)
        logger.info(f"Raw World Bank table: {raw.shape}")
        return raw

    def save(self, raw, path=None):
        path = path if path is not None else self.config.input_files["wb_raw"]
        path.parent.mkdir(parents=True, exist_ok=True)
        raw.to_csv(path, index=False)
        logger.info(f"Raw World Bank data saved to {path}")
        return path


def run_step1(config, session=None):
    """Run Step 1: World Bank Data Download."""
    logger.info("Starting Step 1: World Bank Data Download")

    downloader = WorldBankDownloader(config, session=session)
    raw = downloader.download()
    downloader.save(raw)

    logger.info("Step 1 completed successfully")
    return raw
