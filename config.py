"""
Configuration file for the populism and financial development panel project.

Defaults live here as module constants. Every pipeline step receives an
explicit ``PipelineConfig`` built from them (see ``initialize_paths``), so no
step reads or mutates these globals directly.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

# Project paths - ensure they're always relative to this config file
PROJECT_ROOT = Path(__file__).parent.absolute()
DATA_PATH = PROJECT_ROOT / "data"
OUTPUT_BASE = DATA_PATH / "output"


class ConfigurationError(Exception):
    """Raised when the configuration does not match the data it is applied to."""


# Processing flags
SKIP_STEP_1 = False  # Skip World Bank download (reuse the raw file on disk)
SKIP_STEP_2 = False  # Skip panel construction
SKIP_STEP_3 = False  # Skip estimation
SKIP_STEP_4 = False  # Skip figure generation

# Verbosity settings
VERBOSITY_LEVEL = 2  # 0=quiet, 1=main steps, 2=detailed, 3=debug

# Bootstrap settings
N_BOOTSTRAP = 999  # Set to 99 for testing
RANDOM_SEED = 8675309

# Sample definition
REGION = "LCN"  # World Bank region id for Latin America & Caribbean
DOWNLOAD_START_YEAR = 2000  # Includes the baseline year used for lags
START_YEAR = 2002
END_YEAR = 2022
BASE_YEAR = 2002  # time_trend = year - BASE_YEAR
BASELINE_YEARS = (2000,)  # Present in the populism source, never in the panel

COUNTRIES = [
    "ARG", "BOL", "BRA", "CHL", "COL", "CRI", "DOM", "ECU", "GTM",
    "HND", "MEX", "NIC", "PAN", "PER", "PRY", "SLV", "URY", "VEN",
]

# World Bank indicator code -> short mnemonic used in the panel
INDICATOR_RENAMES = {
    "GFDD.DI.01": "GFD_01",
    "GFDD.DI.14": "GFD_02",
    "GFDD.DI.08": "GFD_03",
    "GFDD.EI.01": "GFD_04",
    "GFDD.SI.01": "GFD_05",
    "GFDD.SI.02": "GFD_06",
    "NY.GDP.PCAP.KD.ZG": "WDI_01",
    "FP.CPI.TOTL.ZG": "WDI_02",
    "NE.TRD.GNFS.ZS": "WDI_03",
    "BN.CAB.XOKA.GD.ZS": "WDI_04",
    "FR.INR.LEND": "WDI_05",
    "NY.GDP.PCAP.KD": "WDI_06",
    "FM.LBL.BMNY.GD.ZS": "WDI_07",
}

# World Bank API source ids; indicators not listed come from WDI (source 2)
INDICATOR_SOURCES = {
    "GFDD.DI.01": 32,
    "GFDD.DI.14": 32,
    "GFDD.DI.08": 32,
    "GFDD.EI.01": 32,
    "GFDD.SI.01": 32,
    "GFDD.SI.02": 32,
}
DEFAULT_SOURCE = 2

INDICATOR_LABELS = {
    "GFD_01": "Private credit by deposit money banks to GDP (%)",
    "GFD_02": "Domestic credit to private sector (% of GDP)",
    "GFD_03": "Deposit money banks' assets to GDP (%)",
    "GFD_04": "Bank net interest margin (%)",
    "GFD_05": "Bank Z-score",
    "GFD_06": "Bank nonperforming loans to gross loans (%)",
    "WDI_01": "GDP per capita growth (annual %)",
    "WDI_02": "Inflation, consumer prices (annual %)",
    "WDI_03": "Trade (% of GDP)",
    "WDI_04": "Current account balance (% of GDP)",
    "WDI_05": "Lending interest rate (%)",
    "WDI_06": "GDP per capita (constant 2015 US$)",
    "WDI_07": "Broad money (% of GDP)",
}

POPULISM_FIELDS = [
    "POP", "PIP", "PEP",
    "IP", "IP_1", "IP_2", "IP_3", "IP_4", "IP_5", "IP_6",
    "EP", "EP_1", "EP_2", "EP_3", "EP_4",
    "POP_R",
]
STANDARDIZED_INDICES = ["POP", "PIP", "PEP"]

POPULISM_LABELS = {
    "POP": "Populism index",
    "PIP": "Institutional populism index",
    "PEP": "Economic populism index",
    "IP": "Institutional populism (composite)",
    "EP": "Economic populism (composite)",
    "POP_R": "Populism index (rescaled)",
}
POPULISM_LABELS.update({f"IP_{i}": f"Institutional populism sub-component {i}" for i in range(1, 7)})
POPULISM_LABELS.update({f"EP_{i}": f"Economic populism sub-component {i}" for i in range(1, 5)})

# (country_code, year) -> {field: value}; applied after the populism merge
MANUAL_OVERRIDES = {
    ("ARG", 2002): {"WDI_02": 40.9},  # December-to-December CPI inflation
}

# country_code -> "always" or first dollarized year
DOLLARIZATION_RULES = {
    "PAN": "always",
    "ECU": 2000,
    "SLV": 2001,
}

# Dependent variables and controls for the fixed-effects regressions
DEPENDENT_VARIABLES = ["GFD_01", "GFD_02", "GFD_04", "GFD_06"]
CONTROL_VARIABLES = ["WDI_01", "WDI_02", "WDI_03", "dollarized", "time_trend", "time_trend2"]
REGRESSION_SPECS = {
    "quadrant": ["quad_2", "quad_3", "quad_4"],
    "continuous": ["PIP_z", "PEP_z"],
    "continuous_lag": ["L1_PIP_z", "L1_PEP_z"],
}

# File paths
INPUT_FILES = {
    "wb_raw": DATA_PATH / "input" / "worldbank_raw.csv",
    "populism": DATA_PATH / "input" / "populism_index.dta",
}

OUTPUT_FILE_NAMES = {
    "panel_parquet": "panel.parquet",
    "panel_csv": "panel.csv",
    "codebook": "panel_codebook.csv",
    "regression_results": "regression_results.csv",
    "bootstrap_draws": "bootstrap/bootstrap_{spec}_{dependent}.csv",
    "summary_statistics": "summary_statistics.csv",
    "quadrant_frequencies": "quadrant_frequencies.csv",
}


@dataclass(frozen=True)
class PipelineConfig:
    """Everything a pipeline step needs, passed explicitly to each step."""

    run_name: str = "default"
    timestamp: str = ""
    output_path: Path = OUTPUT_BASE
    input_files: Dict[str, Path] = field(default_factory=lambda: dict(INPUT_FILES))

    region: str = REGION
    countries: Tuple[str, ...] = tuple(COUNTRIES)
    download_start_year: int = DOWNLOAD_START_YEAR
    start_year: int = START_YEAR
    end_year: int = END_YEAR
    base_year: int = BASE_YEAR
    baseline_years: Tuple[int, ...] = BASELINE_YEARS

    indicator_renames: Dict[str, str] = field(default_factory=lambda: dict(INDICATOR_RENAMES))
    indicator_sources: Dict[str, int] = field(default_factory=lambda: dict(INDICATOR_SOURCES))
    indicator_labels: Dict[str, str] = field(default_factory=lambda: dict(INDICATOR_LABELS))
    populism_fields: Tuple[str, ...] = tuple(POPULISM_FIELDS)
    standardized_indices: Tuple[str, ...] = tuple(STANDARDIZED_INDICES)
    manual_overrides: Dict[Tuple[str, int], Dict[str, float]] = field(
        default_factory=lambda: {k: dict(v) for k, v in MANUAL_OVERRIDES.items()}
    )
    dollarization_rules: Dict[str, Union[str, int]] = field(
        default_factory=lambda: dict(DOLLARIZATION_RULES)
    )

    dependent_variables: Tuple[str, ...] = tuple(DEPENDENT_VARIABLES)
    control_variables: Tuple[str, ...] = tuple(CONTROL_VARIABLES)
    regression_specs: Dict[str, List[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in REGRESSION_SPECS.items()}
    )
    n_bootstrap: int = N_BOOTSTRAP
    random_seed: int = RANDOM_SEED

    verbosity_level: int = VERBOSITY_LEVEL

    def __post_init__(self):
        if self.start_year > self.end_year:
            raise ConfigurationError(
                f"start_year {self.start_year} is after end_year {self.end_year}"
            )
        if self.download_start_year > self.start_year:
            raise ConfigurationError("download_start_year must not be after start_year")
        bad_rules = {
            code: rule for code, rule in self.dollarization_rules.items()
            if rule != "always" and not isinstance(rule, int)
        }
        if bad_rules:
            raise ConfigurationError(f"Invalid dollarization rules: {bad_rules}")
        targets = list(self.indicator_renames.values())
        if len(set(targets)) != len(targets):
            raise ConfigurationError("indicator_renames must map codes to distinct names")

    @property
    def indicator_fields(self) -> List[str]:
        return list(self.indicator_renames.values())

    def output_file(self, key: str, **kwargs) -> Path:
        """Resolve an output file name inside this run's output directory."""
        return self.output_path / OUTPUT_FILE_NAMES[key].format(**kwargs)

    def with_overrides(self, **changes) -> "PipelineConfig":
        return replace(self, **changes)


def get_run_timestamp():
    """Timestamp identifying a run."""
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def initialize_paths(run_name="default", timestamp=None, output_base=None, **overrides):
    """
    Build the configuration for one run and create its output directories.

    The output directory is ``output_{run_name}_{timestamp}`` under
    ``output_base`` (default ``data/output``).
    """
    if timestamp is None:
        timestamp = get_run_timestamp()
    base = Path(output_base) if output_base is not None else OUTPUT_BASE
    output_path = base / f"output_{run_name}_{timestamp}"

    for path in [output_path, output_path / "bootstrap", output_path / "figures"]:
        path.mkdir(exist_ok=True, parents=True)

    return PipelineConfig(
        run_name=run_name,
        timestamp=timestamp,
        output_path=output_path,
        **overrides,
    )


def get_figure_filename(config, figure_name):
    """Figure path for this run, e.g. ``figures/Figure1_default.png``."""
    return config.output_path / "figures" / f"{figure_name}_{config.run_name}.png"


class MatplotlibFilter(logging.Filter):
    def filter(self, record):
        # Filter out matplotlib findfont debug messages
        if record.name == 'matplotlib.font_manager' and 'findfont' in record.getMessage():
            return False
        return True


def setup_logging(verbosity_level=VERBOSITY_LEVEL, log_dir=None, timestamp=None):
    """Set up logging based on verbosity level."""
    if verbosity_level == 0:
        # Quiet mode - only errors
        log_level = logging.ERROR
        format_str = '%(levelname)s - %(message)s'
    elif verbosity_level == 1:
        # Main steps only
        log_level = logging.INFO
        format_str = '%(asctime)s - %(levelname)s - %(message)s'
    elif verbosity_level == 2:
        # Detailed output
        log_level = logging.INFO
        format_str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        # Debug mode
        log_level = logging.DEBUG
        format_str = '%(asctime)s - %(name)s - %(levelname)s:%(lineno)d - %(message)s'

    formatter = logging.Formatter(format_str)
    handlers = []

    if log_dir is not None:
        if timestamp is None:
            timestamp = get_run_timestamp()
        log_filepath = Path(log_dir) / f"populism_panel_{timestamp}.log"
        # Create file handler (logs everything)
        file_handler = logging.FileHandler(log_filepath, mode='w', encoding='utf-8')
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    for handler in handlers:
        handler.addFilter(MatplotlibFilter())

    # force=True clears any existing handlers to avoid duplicates
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logger = logging.getLogger(__name__)
    if log_dir is not None:
        logger.info(f"Logging initialized. Log file: {log_filepath}")
    return logger


def log_file_only(message, level=logging.INFO):
    """
    Log a message to file only, not to console.

    Args:
        message (str): Message to log
        level (int): Logging level (default: INFO)
    """
    logger = logging.getLogger()

    file_handler: Optional[logging.Handler] = None
    console_handler: Optional[logging.Handler] = None
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler):
            file_handler = handler
        elif isinstance(handler, logging.StreamHandler):
            console_handler = handler

    if file_handler and console_handler:
        # Temporarily disable console handler
        previous_level = console_handler.level
        console_handler.setLevel(logging.CRITICAL + 1)
        try:
            logger.log(level, message)
        finally:
            console_handler.setLevel(previous_level)
    else:
        # Fallback: just log normally
        logger.log(level, message)
