#!/usr/bin/env python3
"""
Stage 2: Fixed-effects Poisson models of asthma rates on wildfire smoke PM2.5.

Specifications (all with year fixed effects, SEs clustered by year):
  (1) log rate        ~ log smoke PM2.5 + log facilities   (county-months)
  (2) log lagged rate ~ log smoke PM2.5 + log facilities   (county-months)
  (3) log rate        ~ log smoke PM2.5 + log facilities   (fire-season county-years)

All logs are log(x + 1) to handle zero-smoke months.

Inputs (from build_asthma_smoke_dataset.py):
  output/combined_monthly.csv
  output/combined_seasonal.csv

Outputs:
  output/tables/model_comparison.{tex,html,png}
  output/figures/coefficient_plot.png
  output/figures/rate_histogram.png
"""

import os
import sys
import warnings
import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from statsmodels.iolib.summary2 import summary_col
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

warnings.filterwarnings("ignore", category=FutureWarning)

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
MONTHLY_FILE = os.path.join(BASE_DIR, "output", "combined_monthly.csv")
SEASONAL_FILE = os.path.join(BASE_DIR, "output", "combined_seasonal.csv")
FIG_DIR = os.path.join(BASE_DIR, "output", "figures")
TABLE_DIR = os.path.join(BASE_DIR, "output", "tables")

# Lag resets at each county ("county") or runs across the whole table (None)
LAG_SCOPE = "county"

LOG_FEATURES = {
    "rate": "log_rate",
    "rate_lag": "log_rate_lag",
    "smoke_pm25": "log_smoke_pm25",
    "n_facilities": "log_n_facilities",
}

PREDICTORS = ["log_smoke_pm25", "log_n_facilities"]
FIXED_EFFECT = "year"
MIN_OBS = 30

# (label, dataset, dependent variable)
MODEL_SPECS = [
    ("(1) Monthly", "monthly", "log_rate"),
    ("(2) Monthly, lagged rate", "monthly", "log_rate_lag"),
    ("(3) Fire season", "seasonal", "log_rate"),
]

GOF_STATS = {
    "N": lambda r: f"{int(r.nobs):,}",
    "Log-Likelihood": lambda r: f"{r.llf:.2f}",
    "Deviance": lambda r: f"{r.deviance:.2f}",
    "Pearson chi2": lambda r: f"{r.pearson_chi2:.2f}",
    "AIC": lambda r: f"{r.aic:.2f}",
    "BIC": lambda r: f"{r.bic_llf:.2f}",
}
OMIT_GOF = ("Pearson chi2", "AIC", "BIC")


def load_data():
    """Load the monthly and seasonal tables written by stage 1."""
    print("Loading combined datasets...")
    monthly = pd.read_csv(MONTHLY_FILE, dtype={"fips": str})
    seasonal = pd.read_csv(SEASONAL_FILE)
    print(f"  Monthly: {len(monthly):,} county-months, {monthly['county'].nunique()} counties")
    print(f"  Seasonal: {len(seasonal):,} county-years")
    return monthly, seasonal


def add_lagged_rate(df, by=LAG_SCOPE):
    """Previous row's rate, in the table's existing row order.

    Positional, not keyed on dates: the caller's sort order decides what
    "previous" means. With by="county" the first row of each county is null;
    with by=None only the first row of the table is.
    """
    df = df.copy()
    if by is None:
        df["rate_lag"] = df["rate"].shift(1)
    else:
        df["rate_lag"] = df.groupby(by, sort=False)["rate"].shift(1)
    return df


def add_log_features(df):
    """log(x + 1) of the response, lagged response, exposure and facility count."""
    df = df.copy()
    for src, dst in LOG_FEATURES.items():
        df[dst] = np.log1p(df[src])
    return df


def prepare_features(df, by=LAG_SCOPE):
    return add_log_features(add_lagged_rate(df, by=by))


def fit_poisson(df, dep_var, predictors=PREDICTORS, fe=FIXED_EFFECT, min_obs=MIN_OBS, label=""):
    """Poisson GLM with a categorical fixed effect; SEs clustered on the same group.

    Returns None if there are too few complete rows or estimation fails, so one
    bad model does not stop the others.
    """
    cols = [dep_var] + list(predictors) + [fe]
    subset = df[cols].dropna()

    if len(subset) < min_obs:
        print(f"  SKIP {label}: only {len(subset)} non-missing observations")
        return None

    formula = f"{dep_var} ~ {' + '.join(predictors)} + C({fe})"
    try:
        groups = pd.factorize(subset[fe])[0]
        mod = smf.glm(formula, data=subset, family=sm.families.Poisson())
        res = mod.fit(cov_type="cluster", cov_kwds={"groups": groups})
        return res
    except Exception as e:
        print(f"  ERROR in {label}: {e}")
        return None


def print_result(res, label):
    """Print a compact summary of the non-FE coefficients."""
    if res is None:
        print(f"\n  {label}: no estimate")
        return

    print(f"\n  {label}")
    for var in PREDICTORS:
        coef = res.params.get(var, np.nan)
        se = res.bse.get(var, np.nan)
        pval = res.pvalues.get(var, np.nan)
        stars = "***" if pval < 0.01 else "**" if pval < 0.05 else "*" if pval < 0.10 else ""
        print(f"    {var:<18s} β = {coef:.4f} {stars}  (SE = {se:.4f}, p = {pval:.4f})")
    print(f"    N = {int(res.nobs):,}")


def run_models(monthly, seasonal, min_obs=MIN_OBS):
    """Fit every specification in MODEL_SPECS. Returns {label: result or None}."""
    print("\n" + "=" * 70)
    print("FIXED-EFFECTS POISSON MODELS")
    print(f"  Predictors: {', '.join(PREDICTORS)}; FE: {FIXED_EFFECT}")
    print("=" * 70)

    data = {"monthly": monthly, "seasonal": seasonal}
    fits = {}
    for label, dataset, dep_var in MODEL_SPECS:
        res = fit_poisson(data[dataset], dep_var, min_obs=min_obs, label=label)
        print_result(res, label)
        fits[label] = res
    return fits


def build_comparison_table(fits):
    """Side-by-side coefficients, SEs and stars for the fitted models."""
    fitted = {label: res for label, res in fits.items() if res is not None}
    if not fitted:
        return None

    info = {k: v for k, v in GOF_STATS.items() if k not in OMIT_GOF}
    info["Year FE"] = lambda r: "Yes"

    return summary_col(
        list(fitted.values()),
        model_names=list(fitted.keys()),
        stars=True,
        float_format="%.4f",
        info_dict=info,
        regressor_order=["Intercept"] + PREDICTORS,
        drop_omitted=True,
        include_r2=False,
    )


def export_comparison_table(table, stem):
    """Write the table as LaTeX, HTML and a PNG rendering of the text layout."""
    os.makedirs(os.path.dirname(stem), exist_ok=True)
    paths = [f"{stem}.tex", f"{stem}.html", f"{stem}.png"]

    with open(paths[0], "w") as f:
        f.write(table.as_latex())
    with open(paths[1], "w") as f:
        f.write(table.as_html())

    text = table.as_text()
    n_lines = text.count("\n") + 1
    fig, ax = plt.subplots(figsize=(9, 0.22 * n_lines + 0.5))
    ax.axis("off")
    ax.text(0, 1, text, family="monospace", fontsize=9, va="top", ha="left",
            transform=ax.transAxes)
    fig.savefig(paths[2], dpi=150, bbox_inches="tight")
    plt.close(fig)

    for path in paths:
        print(f"  Saved table: {path}")
    return paths


def coefficient_frame(res):
    """Non-intercept, non-FE estimates with 95% CIs, sorted by magnitude."""
    ci = res.conf_int()
    coefs = pd.DataFrame({
        "term": res.params.index,
        "estimate": res.params.values,
        "ci_low": ci[0].values,
        "ci_high": ci[1].values,
    })
    keep = (coefs["term"] != "Intercept") & ~coefs["term"].str.startswith("C(")
    coefs = coefs[keep].sort_values("estimate", key=lambda s: s.abs())
    return coefs.reset_index(drop=True)


def plot_coefficients(fits, fig_path):
    """One coefficient panel per model, stacked vertically."""
    n_rows = len(fits)
    fig, axes = plt.subplots(n_rows, 1, figsize=(8, 3 * n_rows), squeeze=False)

    for ax, (label, res) in zip(axes[:, 0], fits.items()):
        ax.set_title(label)
        if res is None:
            ax.text(0.5, 0.5, "Model did not fit", ha="center", va="center",
                    transform=ax.transAxes, color="gray")
            ax.set_axis_off()
            continue

        coefs = coefficient_frame(res)
        y_pos = np.arange(len(coefs))
        est = coefs["estimate"].values
        xerr = [est - coefs["ci_low"].values, coefs["ci_high"].values - est]
        ax.errorbar(est, y_pos, xerr=xerr, fmt="o", capsize=4, color="steelblue",
                    linewidth=1.5, markersize=6)
        ax.axvline(0, color="gray", linestyle="--", alpha=0.5)
        ax.set_yticks(y_pos)
        ax.set_yticklabels(coefs["term"])
        ax.set_ylim(-0.7, len(coefs) - 0.3)
        for x, y in zip(est, y_pos):
            ax.annotate(f"{x:.3f}", (x, y), textcoords="offset points", xytext=(0, 8),
                        ha="center", fontsize=8)

    axes[-1, 0].set_xlabel("Estimate (95% CI)")
    plt.tight_layout()
    os.makedirs(os.path.dirname(fig_path), exist_ok=True)
    fig.savefig(fig_path, dpi=150)
    plt.close(fig)
    print(f"  Saved figure: {fig_path}")


def plot_rate_histogram(monthly, fig_path):
    """Distribution of raw monthly asthma rates."""
    rates = monthly["rate"].dropna()
    fig, ax = plt.subplots(figsize=(8, 5))
    ax.hist(rates, bins=40, color="steelblue", edgecolor="white")
    ax.set_xlabel("Asthma rate (per 100,000)")
    ax.set_ylabel("County-months")
    ax.set_title(f"Monthly Asthma Rates (N = {len(rates):,})")
    plt.tight_layout()
    os.makedirs(os.path.dirname(fig_path), exist_ok=True)
    fig.savefig(fig_path, dpi=150)
    plt.close(fig)
    print(f"  Saved figure: {fig_path}")


def main():
    print("=" * 70)
    print("Stage 2: Wildfire Smoke and Asthma: Analysis")
    print("=" * 70)

    for path in [MONTHLY_FILE, SEASONAL_FILE]:
        if not os.path.exists(path):
            print(f"ERROR: {path} not found. Run build_asthma_smoke_dataset.py first.")
            sys.exit(1)

    monthly, seasonal = load_data()

    print("\n--- Descriptive Figures ---")
    plot_rate_histogram(monthly, os.path.join(FIG_DIR, "rate_histogram.png"))

    monthly = prepare_features(monthly)
    seasonal = prepare_features(seasonal)

    fits = run_models(monthly, seasonal)

    print("\n" + "=" * 70)
    print("MODEL COMPARISON")
    print("=" * 70)
    table = build_comparison_table(fits)
    if table is None:
        print("  ERROR: no model could be fitted")
        sys.exit(1)
    print(table)
    export_comparison_table(table, os.path.join(TABLE_DIR, "model_comparison"))

    print("\n--- Coefficient Plot ---")
    plot_coefficients(fits, os.path.join(FIG_DIR, "coefficient_plot.png"))

    n_failed = sum(res is None for res in fits.values())
    print("\n" + "=" * 70)
    print(f"Stage 2 complete ({len(fits) - n_failed}/{len(fits)} models fitted). "
          f"Outputs in: {os.path.dirname(FIG_DIR)}")
    print("=" * 70)


if __name__ == "__main__":
    main()
