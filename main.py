"""
Main processing script for the populism and financial development panel.

This script orchestrates all the major processing steps and can skip steps
when their skip flags are set in config.py.

Usage:
    python main.py [run_name]

    run_name: Optional name for this run (default: "default")
              Output directory will be: data/output/output_{run_name}_{timestamp}

Examples:
    python main.py              # Uses run_name="default"
    python main.py test         # Uses run_name="test"
"""

import logging
import sys

import config
from config import (
    SKIP_STEP_1, SKIP_STEP_2, SKIP_STEP_3, SKIP_STEP_4,
    initialize_paths, setup_logging
)
from step1_data_download import run_step1
from step2_panel_construction import run_step2
from step3_estimation import run_step3
from step4_figure_generation import run_step4

logger = logging.getLogger(__name__)


def get_run_name(argv):
    """Get run_name from command line arguments."""
    if len(argv) > 1:
        return argv[1]
    return "default"


def check_skip_condition(skip_flag, step_name):
    """Check if a step should be skipped based on flag only."""
    if skip_flag:
        logger.info(f"Skipping {step_name} - skip flag is set")
        return True
    return False


def run_pipeline(pipeline_config, skip_flags=(SKIP_STEP_1, SKIP_STEP_2, SKIP_STEP_3, SKIP_STEP_4)):
    """Run steps 1-4 in order, passing each step's output to the next."""
    skip_1, skip_2, skip_3, skip_4 = skip_flags
    panel = None
    results = None

    # Step 1: World Bank download
    if not check_skip_condition(skip_1, "Step 1 (World Bank Download)"):
        logger.info("Running Step 1: World Bank Data Download")
        run_step1(pipeline_config)

    # Step 2: Panel construction
    if not check_skip_condition(skip_2, "Step 2 (Panel Construction)"):
        logger.info("Running Step 2: Panel Construction")
        panel = run_step2(pipeline_config)

    # Step 3: Estimation
    if not check_skip_condition(skip_3, "Step 3 (Estimation)"):
        logger.info("Running Step 3: Fixed-Effects Estimation")
        results = run_step3(pipeline_config, panel=panel)

    # Step 4: Figure generation
    if not check_skip_condition(skip_4, "Step 4 (Figure Generation)"):
        logger.info("Running Step 4: Figure Generation")
        run_step4(pipeline_config, panel=panel, results=results)

    return panel, results


def main(argv=None):
    """Main processing function."""
    argv = sys.argv if argv is None else argv
    run_name = get_run_name(argv)
    pipeline_config = initialize_paths(run_name)
    setup_logging(
        pipeline_config.verbosity_level,
        log_dir=pipeline_config.output_path,
        timestamp=pipeline_config.timestamp,
    )

    logger.info("Starting populism panel pipeline")
    logger.info(f"Project root: {config.PROJECT_ROOT}")
    logger.info(f"Run name: {pipeline_config.run_name}")
    logger.info(f"Output directory: {pipeline_config.output_path}")

    try:
        run_pipeline(pipeline_config)
    except Exception:
        logger.exception("Pipeline failed; no further steps were run")
        raise

    logger.info("Populism panel processing completed successfully!")


if __name__ == "__main__":
    main()
