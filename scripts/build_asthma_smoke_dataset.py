#!/usr/bin/env python3
"""
Stage 1: Build the county-month smoke / asthma analysis dataset for Colorado.

Approach:
  1. Load Childs et al. (2022) county-level daily smoke PM2.5 predictions
  2. Expand to a dense county x day grid (non-smoke days = 0) and sum to
     county-months, one calendar year at a time
  3. Restrict to the target state, check the county count, attach county
     names and boundaries from the Census cartographic shapefile
  4. Left-join CDPHE monthly asthma rates on (county name, year, month)
  5. Left-join health facility counts per county
  6. Roll up fire-season months (May-Sep) to county-years

CRITICAL: The smoke file contains ONLY smoke days. Non-smoke days have
smokePM_pred = 0 and are omitted from the file, so every county-day missing
from the source is filled with 0 before summing.

Inputs:
  data/smoke/smoke_pm25_county_daily.csv
  data/counties/*.shp
  data/asthma/co_asthma_monthly.csv
  data/facilities/co_health_facilities.csv

Outputs:
  output/combined_monthly.csv      county-month panel (no geometry)
  output/combined_monthly.gpkg     county-month panel with county boundaries
  output/combined_seasonal.csv     county-year fire-season panel

Usage:
  python scripts/build_asthma_smoke_dataset.py
  python scripts/build_asthma_smoke_dataset.py --state 08
"""

import argparse
import os
import sys
import warnings
import pandas as pd
import geopandas as gpd

warnings.filterwarnings("ignore", category=FutureWarning)

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
SMOKE_FILE = os.path.join(BASE_DIR, "data", "smoke", "smoke_pm25_county_daily.csv")
COUNTY_DIR = os.path.join(BASE_DIR, "data", "counties")
ASTHMA_FILE = os.path.join(BASE_DIR, "data", "asthma", "co_asthma_monthly.csv")
FACILITY_FILE = os.path.join(BASE_DIR, "data", "facilities", "co_health_facilities.csv")
OUT_DIR = os.path.join(BASE_DIR, "output")

# Colorado
TARGET_STATE = "08"

# Counties per state in the 2020 Census cartographic boundary file
EXPECTED_COUNTY_COUNTS = {
    "06": 58,   # California
    "08": 64,   # Colorado
}

# CDPHE asthma rates start in 2011
ASTHMA_START_YEAR = 2011

# May through September
FIRE_SEASON_MONTHS = (5, 6, 7, 8, 9)

# CDPHE asthma table headers (upper-cased, spaces -> "_") → analysis columns
ASTHMA_COLUMNS = {
    "COUNTY": "county",
    "YEAR": "year",
    "MONTH": "month",
    "RATE": "rate",
    "LOWER_CI": "rate_lower",
    "UPPER_CI": "rate_upper",
    "COUNT": "visits",
}

FACILITY_COUNTY_COL = "COUNTY"

COMBINED_COLUMNS = [
    "county", "fips", "year", "month", "smoke_pm25",
    "rate", "rate_lower", "rate_upper", "visits", "n_facilities", "geometry",
]

SEASONAL_COLUMNS = [
    "county", "year", "smoke_pm25",
    "rate", "rate_lower", "rate_upper", "visits", "n_facilities",
]


class CountyCountError(RuntimeError):
    """Raised when a state's county count does not match EXPECTED_COUNTY_COUNTS."""


def normalize_county_name(names):
    """Canonical county name used as the join key across all sources.

    Boundary file:  "El Paso"          → "El Paso"
    CDPHE asthma:   "El Paso County"   → "El Paso"
    Facility list:  "EL PASO"          → "El Paso"
    """
    names = names.str.strip().str.replace(r"\s+", " ", regex=True)
    names = names.str.replace(r"\s+county$", "", case=False, regex=True)
    return names.str.title()


def load_smoke_data(path=SMOKE_FILE, states=None, chunksize=2_000_000):
    """Load and standardize smoke PM2.5 data.

    If `states` is given, only counties whose FIPS starts with one of those
    state codes are kept. The national file is read in chunks so the
    unfiltered table is never held in memory.
    """
    print("Loading smoke data...")
    # v1.0 is tab-delimited; v2.0 is comma-delimited. Auto-detect.
    with open(path) as f:
        sep = "\t" if "\t" in f.readline() else ","

    chunks = []
    n_read = 0
    for chunk in pd.read_csv(path, sep=sep, dtype={"GEOID": str}, chunksize=chunksize):
        n_read += len(chunk)
        chunk["GEOID"] = chunk["GEOID"].str.zfill(5)
        if states is not None:
            chunk = chunk[chunk["GEOID"].str[:2].isin(states)]
        if len(chunk) > 0:
            chunks.append(chunk[["GEOID", "date", "smokePM_pred"]])

    if not chunks:
        print(f"  WARNING: no smoke rows kept out of {n_read:,}")
        return pd.DataFrame({
            "fips": pd.Series(dtype=str),
            "date": pd.Series(dtype="datetime64[ns]"),
            "smoke_pm25": pd.Series(dtype=float),
        })

    df = pd.concat(chunks, ignore_index=True)
    df = df.rename(columns={"GEOID": "fips", "smokePM_pred": "smoke_pm25"})
    df["date"] = pd.to_datetime(df["date"].astype(str), format="%Y%m%d")

    print(f"  Read {n_read:,} rows, kept {len(df):,} ({df['fips'].nunique():,} counties)")
    print(f"  Date range: {df['date'].min().date()} to {df['date'].max().date()}")
    print(f"  Mean smoke PM2.5 on smoke days: {df['smoke_pm25'].mean():.4f} µg/m³")

    return df[["fips", "date", "smoke_pm25"]]


def load_counties(county_dir=COUNTY_DIR):
    """Load county identifiers, names and boundaries from the Census shapefile."""
    print("Loading county boundaries...")
    shp_files = sorted(f for f in os.listdir(county_dir) if f.endswith(".shp"))
    if not shp_files:
        raise FileNotFoundError(f"No county shapefile found in {county_dir}")

    counties = gpd.read_file(os.path.join(county_dir, shp_files[0]))
    if "GEOID" in counties.columns:
        counties["fips"] = counties["GEOID"].astype(str).str.zfill(5)
    else:
        counties["fips"] = counties["STATEFP"] + counties["COUNTYFP"]
    counties["state_fips"] = counties["fips"].str[:2]
    counties["county"] = normalize_county_name(counties["NAME"])

    print(f"  {len(counties):,} counties loaded (CRS: {counties.crs})")
    return counties[["fips", "state_fips", "county", "geometry"]]


def parse_month(months):
    """Month as 1-12 from either numbers ("7") or names ("July", "Jul")."""
    numeric = pd.to_numeric(months, errors="coerce")
    named = pd.to_datetime(
        months.astype(str).str.strip().str[:3].str.title(), format="%b", errors="coerce"
    ).dt.month
    month = numeric.fillna(named)
    return month.where(month.between(1, 12))


def normalize_headers(columns):
    """Upper-case headers, with spaces and hyphens as "_" ("Lower CI" → "LOWER_CI")."""
    return columns.str.upper().str.strip().str.replace(r"[\s\-]+", "_", regex=True)


def load_asthma_data(path=ASTHMA_FILE):
    """Load CDPHE monthly asthma hospitalization / ED-visit rates by county."""
    print("\nLoading asthma data...")
    df = pd.read_csv(path, dtype=str)
    df.columns = normalize_headers(df.columns)

    missing = [c for c in ASTHMA_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Asthma table is missing columns {missing}; found {list(df.columns)}")

    df = df[list(ASTHMA_COLUMNS)].rename(columns=ASTHMA_COLUMNS)
    df["county"] = normalize_county_name(df["county"])
    df["year"] = pd.to_numeric(df["year"], errors="coerce")
    df["month"] = parse_month(df["month"])

    # Suppressed cells ("*", "~", "NA") become null
    for col in ["rate", "rate_lower", "rate_upper", "visits"]:
        df[col] = pd.to_numeric(df[col].str.replace(",", "", regex=False), errors="coerce")

    n_bad = df[["county", "year", "month"]].isna().any(axis=1).sum()
    if n_bad:
        print(f"  WARNING: dropping {n_bad:,} rows without county/year/month")
    df = df.dropna(subset=["county", "year", "month"]).copy()
    df["year"] = df["year"].astype(int)
    df["month"] = df["month"].astype(int)

    print(f"  {len(df):,} county-month rows, {df['county'].nunique():,} counties")
    print(f"  Years: {df['year'].min()}-{df['year'].max()}")
    print(f"  Suppressed rates: {df['rate'].isna().sum():,}")
    return df


def load_facility_data(path=FACILITY_FILE):
    """Load the health facility address list (one row per facility)."""
    print("\nLoading health facility data...")
    df = pd.read_csv(path, dtype=str)
    df.columns = df.columns.str.upper().str.strip()
    print(f"  {len(df):,} facilities")
    return df


def expand_daily_grid(smoke, fips_list, start, end):
    """Dense county x day smoke PM2.5 for [start, end].

    Every (fips, date) pair in the range gets exactly one row; pairs absent
    from the sparse source get 0. Memory grows with n_counties * n_days, so
    callers should keep the range short (see aggregate_monthly).
    """
    dates = pd.date_range(pd.Timestamp(start), pd.Timestamp(end), freq="D")
    fips_index = pd.Index(fips_list, dtype=object).unique().sort_values()
    if len(dates) == 0 or len(fips_index) == 0:
        return pd.DataFrame({
            "fips": pd.Series(dtype=object),
            "date": pd.Series(dtype="datetime64[ns]"),
            "smoke_pm25": pd.Series(dtype=float),
        })

    observed = smoke[
        smoke["fips"].isin(fips_index)
        & (smoke["date"] >= dates[0])
        & (smoke["date"] <= dates[-1])
    ]
    dupes = observed.duplicated(["fips", "date"])
    if dupes.any():
        raise ValueError(f"{dupes.sum():,} duplicate county-day rows in smoke data")

    grid = pd.MultiIndex.from_product([fips_index, dates], names=["fips", "date"])
    daily = (
        observed.set_index(["fips", "date"])["smoke_pm25"]
        .reindex(grid, fill_value=0.0)
        .reset_index()
    )
    return daily


def aggregate_monthly(smoke, fips_list, start=None, end=None):
    """Sum zero-filled daily smoke PM2.5 to county-months.

    The range defaults to the dates spanned by the source. The dense grid is
    built and dropped one calendar year at a time.
    """
    start = pd.Timestamp(start) if start is not None else smoke["date"].min()
    end = pd.Timestamp(end) if end is not None else smoke["date"].max()
    if pd.isna(start) or pd.isna(end):
        raise ValueError("No smoke rows to aggregate: pass start and end for an empty source")
    n_counties = pd.Index(fips_list).nunique()
    print(f"\nAggregating daily smoke to county-months "
          f"({n_counties:,} counties, {start.date()} to {end.date()})...")

    monthly = []
    for year in range(start.year, end.year + 1):
        yr_start = max(start, pd.Timestamp(f"{year}-01-01"))
        yr_end = min(end, pd.Timestamp(f"{year}-12-31"))
        yr_smoke = smoke[smoke["date"].dt.year == year]

        daily = expand_daily_grid(yr_smoke, fips_list, yr_start, yr_end)
        daily["year"] = daily["date"].dt.year
        daily["month"] = daily["date"].dt.month
        agg = daily.groupby(["fips", "year", "month"], as_index=False)["smoke_pm25"].sum()

        n_smoke = (daily["smoke_pm25"] > 0).sum()
        print(f"  {year}: {len(daily):,} county-days, {n_smoke:,} with smoke "
              f"({100 * n_smoke / max(len(daily), 1):.2f}%)")
        del daily
        monthly.append(agg)

    result = pd.concat(monthly, ignore_index=True)
    result = result.sort_values(["fips", "year", "month"]).reset_index(drop=True)
    print(f"  {len(result):,} county-month rows")
    return result


def report_missing_smoke(smoke, counties, states):
    """Warn about in-state counties that never appear in the smoke source.

    They still get a zero-filled row for every day, so the county count
    passes.
    """
    in_state = counties[counties["state_fips"].isin(states)]
    missing = in_state[~in_state["fips"].isin(smoke["fips"])]
    if len(missing) > 0:
        labels = [f"{f} {c}" for f, c in zip(missing["fips"], missing["county"])]
        print(f"  WARNING: {len(missing)} counties have no smoke rows and are all zeros: "
              f"{', '.join(sorted(labels))}")
    return sorted(missing["fips"])


def filter_state(monthly, counties, state_fips):
    """Restrict monthly exposure to one state and attach county name + boundary."""
    state_counties = counties[counties["state_fips"] == state_fips]
    merged = monthly.merge(
        pd.DataFrame(state_counties[["fips", "county", "geometry"]]), on="fips", how="inner"
    )
    return gpd.GeoDataFrame(merged, geometry="geometry", crs=counties.crs)


def validate_county_count(state_df, state_fips):
    """Check the distinct county count for a state; raise CountyCountError on mismatch."""
    expected = EXPECTED_COUNTY_COUNTS.get(state_fips)
    if expected is None:
        raise CountyCountError(f"No expected county count configured for state {state_fips}")

    n = state_df["fips"].nunique()
    print(f"  State {state_fips}: {n} counties (expected {expected})")
    if n != expected:
        raise CountyCountError(
            f"State {state_fips}: found {n} counties in monthly exposure, expected {expected}"
        )
    return n


def _report_unmatched(names, known, label):
    unmatched = sorted(set(names.dropna()) - set(known.dropna()))
    if unmatched:
        print(f"  WARNING: {len(unmatched)} {label} county names have no boundary match: "
              f"{unmatched}")
    return unmatched


def join_asthma(exposure, asthma):
    """Left-join asthma rates onto monthly exposure by county name, year and month."""
    print("\nJoining asthma rates...")
    keys = ["county", "year", "month"]
    dupes = asthma.duplicated(keys)
    if dupes.any():
        raise ValueError(f"{dupes.sum():,} duplicate county-year-month rows in asthma data")

    _report_unmatched(asthma["county"], exposure["county"], "asthma")

    combined = exposure.merge(asthma, on=keys, how="left", indicator=True)
    n_matched = (combined["_merge"] == "both").sum()
    combined = combined.drop(columns="_merge")
    print(f"  Matched: {n_matched:,}/{len(combined):,} county-months")
    return combined


def count_facilities(facilities, county_col=FACILITY_COUNTY_COL):
    """Number of registered facility addresses per county."""
    names = normalize_county_name(facilities[county_col])
    counts = (
        facilities.assign(county=names)
        .groupby("county")
        .size()
        .reset_index(name="n_facilities")
    )
    print(f"  {counts['n_facilities'].sum():,} facilities in {len(counts):,} counties")
    return counts


def join_facilities(combined, counts):
    """Left-join facility counts by county name (null where a county has none listed)."""
    print("\nJoining facility counts...")
    _report_unmatched(counts["county"], combined["county"], "facility")
    merged = combined.merge(counts, on="county", how="left")
    n_matched = merged.loc[merged["n_facilities"].notna(), "county"].nunique()
    print(f"  Counties with facilities: {n_matched}/{merged['county'].nunique()}")
    return merged


def seasonal_rollup(combined):
    """Fire-season (May-Sep) county-year totals and averages.

    Exposure and visit counts are flows and are summed. Rates, CI bounds and
    facility counts are levels and are averaged. Nulls are skipped, but a
    county-year with no reported visits keeps null visits rather than 0.
    """
    season = pd.DataFrame(combined.drop(columns="geometry", errors="ignore"))
    season = season[season["month"].isin(FIRE_SEASON_MONTHS)]

    seasonal = season.groupby(["county", "year"], as_index=False).agg(
        smoke_pm25=("smoke_pm25", "sum"),
        rate=("rate", "mean"),
        rate_lower=("rate_lower", "mean"),
        rate_upper=("rate_upper", "mean"),
        visits=("visits", lambda s: s.sum(min_count=1)),
        n_facilities=("n_facilities", "mean"),
    )
    seasonal = seasonal.sort_values(["county", "year"]).reset_index(drop=True)
    return seasonal[SEASONAL_COLUMNS]


def build_dataset(monthly, counties, asthma, facilities, state_fips=TARGET_STATE):
    """Filter, validate, join and roll up. Returns (combined_monthly, seasonal)."""
    exposure = filter_state(monthly, counties, state_fips)
    validate_county_count(exposure, state_fips)

    combined = join_asthma(exposure, asthma)
    n_before = len(combined)
    combined = combined[combined["year"] >= ASTHMA_START_YEAR]
    print(f"  Dropped {n_before - len(combined):,} county-months before {ASTHMA_START_YEAR}")

    counts = count_facilities(facilities)
    combined = join_facilities(combined, counts)

    combined = combined.sort_values(["county", "year", "month"]).reset_index(drop=True)
    combined = gpd.GeoDataFrame(combined[COMBINED_COLUMNS], geometry="geometry")

    seasonal = seasonal_rollup(combined)
    return combined, seasonal


def save_outputs(combined, seasonal, out_dir=OUT_DIR):
    """Write the monthly table (CSV + GeoPackage) and seasonal table (CSV)."""
    os.makedirs(out_dir, exist_ok=True)
    paths = {
        "monthly_csv": os.path.join(out_dir, "combined_monthly.csv"),
        "monthly_gpkg": os.path.join(out_dir, "combined_monthly.gpkg"),
        "seasonal_csv": os.path.join(out_dir, "combined_seasonal.csv"),
    }

    pd.DataFrame(combined.drop(columns="geometry")).to_csv(paths["monthly_csv"], index=False)

    if os.path.exists(paths["monthly_gpkg"]):
        os.remove(paths["monthly_gpkg"])
    combined.to_file(paths["monthly_gpkg"], driver="GPKG", layer="combined_monthly")

    seasonal.to_csv(paths["seasonal_csv"], index=False)

    for path in paths.values():
        print(f"  Saved: {path}")
    return paths


def main():
    parser = argparse.ArgumentParser(
        description="Build the county-month smoke PM2.5 / asthma dataset."
    )
    parser.add_argument(
        "--state", default=TARGET_STATE,
        help=f"Two-digit state FIPS to join with asthma data (default {TARGET_STATE})"
    )
    args = parser.parse_args()

    print("=" * 60)
    print("Stage 1: Build Smoke PM2.5 / Asthma Dataset")
    print("=" * 60)

    for path in [SMOKE_FILE, ASTHMA_FILE, FACILITY_FILE]:
        if not os.path.exists(path):
            print(f"ERROR: Input not found: {path}")
            print("  Run scripts/download_source_data.py first.")
            sys.exit(1)

    try:
        counties = load_counties(COUNTY_DIR)
    except FileNotFoundError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    states = sorted(set(EXPECTED_COUNTY_COUNTS) | {args.state})
    smoke = load_smoke_data(SMOKE_FILE, states=states)
    if len(smoke) == 0:
        print(f"ERROR: No smoke rows for states {states}")
        sys.exit(1)

    report_missing_smoke(smoke, counties, states)

    # NOTE: every county of every checked state gets a row for every day in
    # the source range, smoke or not
    fips_list = counties.loc[counties["state_fips"].isin(states), "fips"]
    monthly = aggregate_monthly(smoke, fips_list)
    del smoke

    print("\nValidating county coverage...")
    try:
        for state_fips in states:
            validate_county_count(filter_state(monthly, counties, state_fips), state_fips)
    except CountyCountError as e:
        print(f"\nERROR: {e}")
        print("  Halting before joins: downstream tables assume complete county coverage.")
        sys.exit(1)

    asthma = load_asthma_data(ASTHMA_FILE)
    facilities = load_facility_data(FACILITY_FILE)
    combined, seasonal = build_dataset(monthly, counties, asthma, facilities, args.state)

    print("\n--- Saving ---")
    save_outputs(combined, seasonal, OUT_DIR)

    print("\n" + "=" * 60)
    print("DATASET SUMMARY")
    print("=" * 60)
    print(f"  Monthly: {len(combined):,} county-months, {combined['county'].nunique()} counties, "
          f"{combined['year'].min()}-{combined['year'].max()}")
    print(f"    Smoke PM2.5 (monthly sum): mean={combined['smoke_pm25'].mean():.2f}, "
          f"max={combined['smoke_pm25'].max():.1f}")
    print(f"    Asthma rate: mean={combined['rate'].mean():.2f}, "
          f"missing={combined['rate'].isna().sum():,}")
    print(f"  Seasonal: {len(seasonal):,} county-years")
    for year in sorted(seasonal["year"].unique()):
        yr_df = seasonal[seasonal["year"] == year]
        print(f"    {year}: season smoke PM2.5 mean={yr_df['smoke_pm25'].mean():.1f}, "
              f"rate mean={yr_df['rate'].mean():.2f}")

    print("\nStage 1 complete.")


if __name__ == "__main__":
    main()
