"""
Step 4: Figure Generation

This module creates the publication figures and summary tables from the
materialized panel (Step 2) and the regression results (Step 3):

- Figure 1: Populism quadrant composition of the panel by year
- Figure 2: Mean populism z-scores by country (heatmap)
- Figure 3: Quadrant effects on each financial indicator with 95%
  bootstrap intervals
- summary_statistics.csv: descriptive statistics of the panel
- quadrant_frequencies.csv: country-years per quadrant and year
"""

import logging

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from config import get_figure_filename
from step2_panel_construction import QUADRANT_DUMMIES, QUADRANT_LABELS

logger = logging.getLogger(__name__)

QUADRANT_COLORS = {
    "Control": "#9e9e9e",
    "Economic Populism": "#1f77b4",
    "Institutional Populism": "#ff7f0e",
    "Full Populism": "#d62728",
}


class FigureGeneration:
    """Class to handle figure and table generation."""

    def __init__(self, config, panel=None, results=None):
        self.config = config
        self.panel = panel
        self.results = results
        self.figure_paths = []

    def load_data(self):
        """Load all data required for figure generation."""
        logger.info("Loading data for figure generation...")

        panel_path = self.config.output_file("panel_parquet")
        if self.panel is None and panel_path.exists():
            self.panel = pd.read_parquet(panel_path)

        results_path = self.config.output_file("regression_results")
        if self.results is None and results_path.exists():
            self.results = pd.read_csv(results_path)

        logger.info("Data loading completed")

    def _save(self, fig, name):
        fig_path = get_figure_filename(self.config, name)
        fig_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(fig_path, dpi=300, bbox_inches="tight")
        plt.close(fig)
        logger.info(f"{name} saved to {fig_path}")
        self.figure_paths.append(fig_path)
        return fig_path

    def quadrant_shares(self):
        """Share of country-years in each quadrant, by year (missing quadrants excluded)."""
        classified = self.panel.dropna(subset=["quadrant"])
        counts = pd.crosstab(classified["year"], classified["quadrant"])
        counts = counts.reindex(columns=QUADRANT_LABELS, fill_value=0)
        counts.columns = pd.Index(QUADRANT_LABELS)
        return counts.div(counts.sum(axis=1), axis=0)

    def create_figure1(self):
        """Create Figure 1: quadrant composition by year."""
        logger.info("Creating Figure 1...")
        if self.panel is None:
            logger.warning("Required data not available for Figure 1")
            return None

        shares = self.quadrant_shares()
        fig, ax = plt.subplots(figsize=(10, 5.5))
        bottom = np.zeros(len(shares))
        for label in QUADRANT_LABELS:
            ax.bar(shares.index, shares[label], bottom=bottom, color=QUADRANT_COLORS[label], label=label)
            bottom += shares[label].to_numpy()
        ax.set_xlabel("Year")
        ax.set_ylabel("Share of countries")
        ax.set_ylim(0, 1)
        ax.set_title("Populism quadrants in Latin America")
        ax.legend(loc="upper center", bbox_to_anchor=(0.5, -0.12), ncol=4, frameon=False)
        return self._save(fig, "Figure1")

    def create_figure2(self):
        """Create Figure 2: mean z-scores by country."""
        logger.info("Creating Figure 2...")
        if self.panel is None:
            logger.warning("Required data not available for Figure 2")
            return None

        z_columns = [f"{col}_z" for col in self.config.standardized_indices]
        means = self.panel.groupby("country_name")[z_columns].mean().astype(float)
        fig, ax = plt.subplots(figsize=(6, 0.35 * len(means) + 1.5))
        sns.heatmap(means, ax=ax, cmap="RdBu_r", center=0, annot=True, fmt=".2f",
                    cbar_kws={"label": "Mean z-score"})
        ax.set_xlabel("")
        ax.set_ylabel("")
        ax.set_title("Average populism scores, within-year standardized")
        return self._save(fig, "Figure2")

    def create_figure3(self):
        """Create Figure 3: quadrant coefficients with bootstrap intervals."""
        logger.info("Creating Figure 3...")
        if self.results is None or self.results.empty:
            logger.warning("Required data not available for Figure 3")
            return None

        coefs = self.results[
            (self.results["spec"] == "quadrant") & self.results["term"].isin(list(QUADRANT_DUMMIES))
        ].copy()
        if coefs.empty:
            logger.warning("No quadrant coefficients to plot for Figure 3")
            return None
        coefs["quadrant"] = coefs["term"].map(QUADRANT_DUMMIES)
        coefs["label"] = coefs["dependent"].map(lambda d: self.config.indicator_labels.get(d, d))

        dependents = list(dict.fromkeys(coefs["dependent"]))
        fig, axes = plt.subplots(1, len(dependents), figsize=(4.5 * len(dependents), 4), squeeze=False)
        for ax, dependent in zip(axes[0], dependents):
            subset = coefs[coefs["dependent"] == dependent]
            positions = np.arange(len(subset))
            # percentile intervals need not contain the point estimate
            ax.vlines(positions, subset["boot_ci_low"], subset["boot_ci_high"], color="black", linewidth=1.5)
            ax.plot(positions, subset["coef"], "o", color="black")
            ax.axhline(0, color="grey", linestyle="--", linewidth=1)
            ax.set_xticks(positions)
            ax.set_xticklabels([q.replace(" ", "\n") for q in subset["quadrant"]])
            ax.set_title(subset["label"].iloc[0], fontsize=9)
            ax.grid(True, axis="y", alpha=0.3)
        axes[0][0].set_ylabel("Effect relative to Control")
        fig.suptitle("Populism quadrants and financial development (95% bootstrap CI)")
        plt.tight_layout()
        return self._save(fig, "Figure3")

    def create_summary_tables(self):
        """Create summary tables."""
        logger.info("Creating summary tables...")
        if self.panel is None:
            logger.warning("Required data not available for summary tables")
            return None

        numeric = self.panel.drop(columns=["country_id", "year"]).select_dtypes(include="number")
        summary = numeric.astype(float).describe().T[["count", "mean", "std", "min", "max"]]
        summary.insert(0, "label", [self.config.indicator_labels.get(c, "") for c in summary.index])
        summary_path = self.config.output_file("summary_statistics")
        summary.to_csv(summary_path, index_label="variable", float_format="%.4f")
        logger.info(f"Summary table saved to {summary_path}")

        frequencies = pd.crosstab(self.panel["year"], self.panel["quadrant"])
        years = sorted(self.panel["year"].unique())
        frequencies = frequencies.reindex(index=years, columns=QUADRANT_LABELS, fill_value=0)
        frequencies.columns = pd.Index(QUADRANT_LABELS)
        frequencies["Unclassified"] = self.panel.groupby("year")["quadrant"].apply(lambda s: s.isna().sum())
        frequencies.loc["Total"] = frequencies.sum()
        frequencies_path = self.config.output_file("quadrant_frequencies")
        frequencies.to_csv(frequencies_path)
        logger.info(f"Quadrant frequencies saved to {frequencies_path}")
        return summary, frequencies

    def run_all_figures(self):
        """Run all figure generation."""
        logger.info("Running all figure generation...")

        self.load_data()

        self.create_figure1()
        self.create_figure2()
        self.create_figure3()

        self.create_summary_tables()

        logger.info("All figures generated successfully")


def run_step4(config, panel=None, results=None):
    """Run Step 4: Figure Generation."""
    logger.info("Starting Step 4: Figure Generation")

    processor = FigureGeneration(config, panel=panel, results=results)
    processor.run_all_figures()

    logger.info("Step 4 completed successfully")
    return processor.figure_paths
