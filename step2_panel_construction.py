"""
Step 2: Panel Construction

PURPOSE:
Turn the raw World Bank download and the populism-index dataset into the
country-year panel used by every regression. Each stage below takes a
DataFrame and returns a new one; ``PanelConstruction.run`` chains them.

STAGES:
1. Base panel: keep Latin America & Caribbean (region LCN) and the analysis
   window, rename indicator codes to GFD_xx / WDI_xx, add time trends and a
   country id (1..N in alphabetical order of country_code).
2. Populism merge: strict 1:1 join on (country_code, year). Any duplicate or
   unmatched key aborts the run. Manual overrides (e.g. Argentina's 2002 CPI
   inflation) are written after the merge.
3. Standardization: POP, PIP and PEP are z-scored within each year.
4. Typology: PIP_z and PEP_z are split at their full-panel medians and
   crossed into four quadrants (Control, Economic, Institutional, Full
   populism), with dummies for all but Control.
5. Dollarization dummy from a static country rule table.
6. Materialization: verify the (country_id, year) key and write the panel as
   Parquet and CSV, plus a codebook.

MISSING DATA:
Numeric columns use pandas nullable dtypes (Float64 / Int8). A missing input
stays missing through every derived column; it is never replaced by 0.
"""

import logging
import os

import numpy as np
import pandas as pd

from config import ConfigurationError, POPULISM_LABELS

logger = logging.getLogger(__name__)

KEY_COLUMNS = ["country_code", "year"]
PANEL_KEY = ["country_id", "year"]
RAW_REQUIRED_COLUMNS = ["country_code", "country_name", "region", "year"]

QUADRANT_LABELS = ["Control", "Economic Populism", "Institutional Populism", "Full Populism"]
# Dummy column -> quadrant; Control is the omitted baseline
QUADRANT_DUMMIES = {
    "quad_2": "Economic Populism",
    "quad_3": "Institutional Populism",
    "quad_4": "Full Populism",
}


class JoinIntegrityError(Exception):
    """A join that must be one-to-one found duplicate or unmatched keys."""

    def __init__(self, message, unmatched_left=None, unmatched_right=None, duplicates=None):
        super().__init__(message)
        self.unmatched_left = unmatched_left or []
        self.unmatched_right = unmatched_right or []
        self.duplicates = duplicates or []


class PanelKeyError(JoinIntegrityError):
    """The panel key (country_id, year) is not unique, or ids are not a bijection."""


def _as_float(series):
    """Plain float64 view of a (possibly nullable) numeric column, NA as NaN."""
    return pd.Series(series.to_numpy(dtype="float64", na_value=np.nan), index=series.index)


def _key_list(frame, columns=KEY_COLUMNS):
    return [tuple(row) for row in frame[columns].itertuples(index=False, name=None)]


def require_columns(frame, columns, what):
    """Raise ConfigurationError naming every column of ``columns`` absent from ``frame``."""
    missing = [col for col in columns if col not in frame.columns]
    if missing:
        raise ConfigurationError(f"{what} is missing required columns: {missing}")


def verify_unique_key(frame, key, what, error_class=PanelKeyError):
    duplicated = frame.duplicated(key, keep=False)
    if duplicated.any():
        duplicates = sorted(set(_key_list(frame[duplicated], key)))
        raise error_class(
            f"{what}: {len(duplicates)} duplicated {tuple(key)} keys, e.g. {duplicates[:5]}",
            duplicates=duplicates,
        )


def panel_column_order(config):
    """Documented column order of the materialized panel."""
    return (
        ["country_id", "country_code", "country_name", "year"]
        + config.indicator_fields
        + ["time_trend", "time_trend2"]
        + list(config.populism_fields)
        + [f"{col}_z" for col in config.standardized_indices]
        + ["dollarized", "quadrant"]
        + list(QUADRANT_DUMMIES)
    )


def build_base_panel(raw, config):
    """
    Filter, rename and key the raw World Bank table.

    Returns one row per (country_code, year) in the region and year window,
    with indicator fields, ``time_trend``, ``time_trend2`` and ``country_id``.
    """
    require_columns(raw, RAW_REQUIRED_COLUMNS, "Raw World Bank table")
    missing_codes = [code for code in config.indicator_renames if code not in raw.columns]
    if missing_codes:
        raise ConfigurationError(f"Raw World Bank table has no column for indicators {missing_codes}")

    n_raw = len(raw)
    panel = raw[raw["region"] == config.region]
    logger.info(f"Region filter ({config.region}): kept {len(panel)} of {n_raw} rows")

    year = panel["year"].astype("int64")
    panel = panel[(year >= config.start_year) & (year <= config.end_year)]
    logger.info(f"Year filter ({config.start_year}-{config.end_year}): {len(panel)} rows remain")

    panel = panel[["country_code", "country_name", "year"] + list(config.indicator_renames)]
    panel = panel.rename(columns=config.indicator_renames)
    panel = panel.astype({"country_code": "string", "country_name": "string", "year": "int64"})
    panel = panel.astype({col: "Float64" for col in config.indicator_fields})

    panel["time_trend"] = panel["year"] - config.base_year
    panel["time_trend2"] = panel["time_trend"] ** 2

    panel = panel.sort_values(KEY_COLUMNS).reset_index(drop=True)
    verify_unique_key(panel, KEY_COLUMNS, "Raw World Bank table")

    codes = sorted(panel["country_code"].unique())
    country_ids = {code: i for i, code in enumerate(codes, start=1)}
    panel.insert(0, "country_id", panel["country_code"].map(country_ids).astype("int64"))

    logger.info(f"Base panel: {len(codes)} countries, {len(panel)} country-years")
    return panel


def load_populism(path):
    """Read the populism table from CSV, Stata or Parquet according to the suffix."""
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return pd.read_csv(path)
    if suffix == ".dta":
        return pd.read_stata(path)
    if suffix == ".parquet":
        return pd.read_parquet(path)
    raise ConfigurationError(f"Unsupported populism file format: {path}")


def merge_populism(panel, populism, config):
    """
    One-to-one merge of the populism indices onto the base panel.

    Populism rows for the baseline years (and any year outside the panel
    window) are dropped first. After that every panel key must match exactly
    one populism row and vice versa, otherwise JoinIntegrityError is raised
    with the offending keys.
    """
    require_columns(populism, KEY_COLUMNS + list(config.populism_fields), "Populism table")

    populism = populism[KEY_COLUMNS + list(config.populism_fields)].copy()
    populism["country_code"] = populism["country_code"].astype("string")
    populism["year"] = populism["year"].astype("int64")

    out_of_window = (
        populism["year"].isin(config.baseline_years)
        | (populism["year"] < config.start_year)
        | (populism["year"] > config.end_year)
    )
    if out_of_window.any():
        logger.info(
            f"Dropping {out_of_window.sum()} populism rows outside {config.start_year}-"
            f"{config.end_year} (baseline years {list(config.baseline_years)})"
        )
    populism = populism[~out_of_window]

    verify_unique_key(panel, KEY_COLUMNS, "Base panel", error_class=JoinIntegrityError)
    verify_unique_key(populism, KEY_COLUMNS, "Populism table", error_class=JoinIntegrityError)

    check = panel[KEY_COLUMNS].merge(populism[KEY_COLUMNS], on=KEY_COLUMNS, how="outer", indicator=True)
    unmatched_left = sorted(_key_list(check[check["_merge"] == "left_only"]))
    unmatched_right = sorted(_key_list(check[check["_merge"] == "right_only"]))
    if unmatched_left or unmatched_right:
        for key in unmatched_left:
            logger.error(f"Panel row without populism data: {key}")
        for key in unmatched_right:
            logger.error(f"Populism row without panel data: {key}")
        raise JoinIntegrityError(
            f"Populism merge is not one-to-one: {len(unmatched_left)} panel keys and "
            f"{len(unmatched_right)} populism keys unmatched",
            unmatched_left=unmatched_left,
            unmatched_right=unmatched_right,
        )

    merged = panel.merge(populism, on=KEY_COLUMNS, how="left", validate="one_to_one")
    merged = merged.astype({col: "Float64" for col in config.populism_fields})

    merged = apply_manual_overrides(merged, config.manual_overrides)

    if len(merged) != len(panel):
        raise JoinIntegrityError(
            f"Populism merge changed the row count from {len(panel)} to {len(merged)}"
        )
    verify_unique_key(merged, PANEL_KEY, "Merged panel")
    logger.info(f"Populism merge: {len(merged)} rows, all keys matched")
    return merged


def apply_manual_overrides(panel, overrides):
    """Write fixed values over source data for specific (country_code, year) cells."""
    panel = panel.copy()
    unknown = sorted({f for fields in overrides.values() for f in fields if f not in panel.columns})
    if unknown:
        raise ConfigurationError(f"Manual overrides reference unknown columns: {unknown}")

    for (country_code, year), fields in sorted(overrides.items()):
        mask = (panel["country_code"] == country_code) & (panel["year"] == year)
        if not mask.any():
            logger.warning(f"Manual override for {country_code} {year} matches no panel row")
            continue
        for field_name, value in fields.items():
            previous = panel.loc[mask, field_name].iloc[0]
            panel.loc[mask, field_name] = value
            logger.info(f"Override {country_code} {year} {field_name}: {previous} -> {value}")
    return panel


def standardize_within_year(panel, columns):
    """
    Add ``<col>_z`` = (x - mean_year) / sd_year for each column.

    Mean and sample standard deviation (ddof=1) are taken over the
    non-missing values of each year. Years with fewer than two values or no
    variation get missing z-scores.
    """
    panel = panel.copy()
    for col in columns:
        values = _as_float(panel[col])
        grouped = values.groupby(panel["year"])
        mean = grouped.transform("mean")
        std = grouped.transform("std")
        count = grouped.transform("count")

        z = (values - mean) / std
        degenerate = (count < 2) | (std == 0) | std.isna()
        z[degenerate] = np.nan
        panel[f"{col}_z"] = z.astype("Float64")

        degenerate_years = sorted(panel.loc[degenerate & values.notna(), "year"].unique())
        if degenerate_years:
            logger.warning(f"{col}: no usable within-year variation in {degenerate_years}; z-scores missing")
    return panel


def median_split(values):
    """
    Split at the median of the non-missing values.

    Returns (flags, median): flag 1 above the median, 0 at or below it,
    missing where the value is missing.
    """
    values = _as_float(values)
    median = values.median()
    flags = pd.Series(np.where(values > median, 1.0, 0.0), index=values.index)
    flags[values.isna()] = np.nan
    return flags.astype("Int8"), median


def assign_typology(panel):
    """
    Add ``quadrant`` and the ``quad_2``..``quad_4`` dummies.

    Returns (panel, medians). Medians are computed over the whole panel as it
    is at call time, across all years and countries.
    """
    panel = panel.copy()
    high_pip, pip_median = median_split(panel["PIP_z"])
    high_pep, pep_median = median_split(panel["PEP_z"])
    logger.info(f"Typology medians: PIP_z={pip_median:.4f}, PEP_z={pep_median:.4f}")

    # (high_PIP, high_PEP): (0,0) Control, (0,1) Economic, (1,0) Institutional, (1,1) Full
    both = high_pip.notna() & high_pep.notna()
    codes = np.full(len(panel), -1, dtype="int8")
    codes[both.to_numpy()] = (
        2 * high_pip[both].to_numpy(dtype="int8") + high_pep[both].to_numpy(dtype="int8")
    )
    panel["quadrant"] = pd.Categorical.from_codes(codes, categories=QUADRANT_LABELS, ordered=True)

    for dummy, label in QUADRANT_DUMMIES.items():
        panel[dummy] = (panel["quadrant"] == label).astype("int8")

    counts = panel["quadrant"].value_counts(dropna=False, sort=False)
    logger.info(f"Quadrant counts: {counts.to_dict()}")
    return panel, {"PIP_z": pip_median, "PEP_z": pep_median}


def add_dollarization(panel, rules):
    """dollarized = 1 for 'always' countries, or from the threshold year on."""
    panel = panel.copy()
    dollarized = np.zeros(len(panel), dtype="int8")
    for country_code, rule in rules.items():
        mask = (panel["country_code"] == country_code).to_numpy(dtype=bool, na_value=False)
        if rule == "always":
            dollarized[mask] = 1
        else:
            dollarized[mask & (panel["year"] >= rule).to_numpy(dtype=bool, na_value=False)] = 1
    panel["dollarized"] = dollarized
    return panel


def verify_panel_key(panel):
    """Fail unless (country_id, year) is unique and country_code <-> country_id is a bijection."""
    verify_unique_key(panel, PANEL_KEY, "Panel")
    pairs = panel[["country_code", "country_id"]].drop_duplicates()
    if pairs["country_code"].duplicated().any() or pairs["country_id"].duplicated().any():
        raise PanelKeyError("country_code and country_id are not in one-to-one correspondence")


def codebook(config):
    labels = {
        "country_id": "Country identifier (panel group key)",
        "country_code": "ISO 3166-1 alpha-3 country code",
        "country_name": "Country name",
        "year": "Year",
        "time_trend": f"Linear time trend (year - {config.base_year})",
        "time_trend2": "Quadratic time trend",
        "dollarized": "Officially dollarized economy (1 = yes)",
        "quadrant": "Populism quadrant (median split of PIP_z and PEP_z)",
        "quad_2": "Economic populism quadrant (1 = yes)",
        "quad_3": "Institutional populism quadrant (1 = yes)",
        "quad_4": "Full populism quadrant (1 = yes)",
    }
    labels.update(config.indicator_labels)
    labels.update(POPULISM_LABELS)
    for col in config.standardized_indices:
        labels[f"{col}_z"] = f"{labels.get(col, col)}, z-score within year"
    columns = panel_column_order(config)
    return pd.DataFrame({"variable": columns, "label": [labels.get(col, "") for col in columns]})


def materialize_panel(panel, config):
    """
    Verify the key and write Parquet, CSV and codebook.

    Files are written under temporary names and renamed only after every
    write succeeded.
    """
    verify_panel_key(panel)
    columns = panel_column_order(config)
    require_columns(panel, columns, "Final panel")
    panel = panel[columns].sort_values(PANEL_KEY).reset_index(drop=True)

    targets = {
        "panel_parquet": config.output_file("panel_parquet"),
        "panel_csv": config.output_file("panel_csv"),
        "codebook": config.output_file("codebook"),
    }
    temporary = {key: path.with_name(path.name + ".tmp") for key, path in targets.items()}
    try:
        panel.to_parquet(temporary["panel_parquet"], index=False)
        panel.to_csv(temporary["panel_csv"], index=False)
        codebook(config).to_csv(temporary["codebook"], index=False)
    except Exception:
        for path in temporary.values():
            if path.exists():
                path.unlink()
        raise
    for key, path in targets.items():
        os.replace(temporary[key], path)
        logger.info(f"Wrote {path}")
    return panel


class PanelConstruction:
    """Build the country-year panel from the raw inputs."""

    def __init__(self, config):
        self.config = config
        self.raw = None
        self.populism = None
        self.data = None
        self.medians = {}

    def load_data(self):
        logger.info("Loading raw World Bank and populism data...")
        self.raw = pd.read_csv(self.config.input_files["wb_raw"], dtype={"country_code": str})
        self.populism = load_populism(self.config.input_files["populism"])
        logger.info(f"Raw data: {self.raw.shape}; populism data: {self.populism.shape}")

    def build(self):
        """Run every transformation stage; nothing is written."""
        config = self.config
        panel = build_base_panel(self.raw, config)
        panel = merge_populism(panel, self.populism, config)
        panel = standardize_within_year(panel, config.standardized_indices)
        panel, self.medians = assign_typology(panel)
        panel = add_dollarization(panel, config.dollarization_rules)
        self.data = panel
        return panel

    def save(self):
        self.data = materialize_panel(self.data, self.config)
        return self.data


def run_step2(config, raw=None, populism=None):
    """Run Step 2: Panel Construction."""
    logger.info("Starting Step 2: Panel Construction")

    processor = PanelConstruction(config)
    if raw is None or populism is None:
        processor.load_data()
    if raw is not None:
        processor.raw = raw
    if populism is not None:
        processor.populism = populism

    processor.build()
    panel = processor.save()

    logger.info("Step 2 completed successfully")
    return panel
