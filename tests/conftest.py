"""
Shared synthetic inputs for the pipeline tests.

Everything is built in memory; nothing here reads from data/ or output/.
"""

import numpy as np
import pandas as pd
import geopandas as gpd
import pytest


def make_counties(state_fips, n, names=None):
    """County identity table with n counties in one state (odd county codes, like Census)."""
    fips = [f"{state_fips}{code:03d}" for code in range(1, 2 * n, 2)]
    names = list(names or [])
    names += [f"Name{i:02d}" for i in range(len(names), n)]
    geometry = gpd.GeoSeries.from_xy(np.arange(n, dtype=float), np.zeros(n)).buffer(0.4)
    return gpd.GeoDataFrame(
        {"fips": fips, "state_fips": state_fips, "county": names[:n]},
        geometry=geometry,
        crs="EPSG:4326",
    )


def make_monthly(fips, years):
    """Dense county-month exposure table with deterministic smoke sums."""
    idx = pd.MultiIndex.from_product([fips, years, range(1, 13)],
                                     names=["fips", "year", "month"])
    monthly = idx.to_frame(index=False)
    monthly["smoke_pm25"] = (monthly["month"] * 1.5 + monthly.index % 7).astype(float)
    return monthly


# ---------------------------------------------------------------------------
# Stage 1 fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def co_counties():
    """64 Colorado counties, the first three with real names."""
    return make_counties("08", 64, names=["Adams", "El Paso", "La Plata"])


@pytest.fixture
def co_monthly(co_counties):
    """County-month smoke sums for every Colorado county, 2010-2012."""
    return make_monthly(co_counties["fips"].tolist(), [2010, 2011, 2012])


@pytest.fixture
def asthma():
    """Asthma rates for Adams and El Paso only, 2010-2012."""
    rows = []
    for county, base in [("Adams", 10.0), ("El Paso", 20.0)]:
        for year in [2010, 2011, 2012]:
            for month in range(1, 13):
                rows.append({
                    "county": county, "year": year, "month": month,
                    "rate": base + month, "rate_lower": base + month - 2,
                    "rate_upper": base + month + 2, "visits": float(month * 3),
                })
    return pd.DataFrame(rows)


@pytest.fixture
def facilities():
    """Facility address list with upper-case county names, as published."""
    return pd.DataFrame({
        "NAME": ["Clinic A", "Clinic B", "Hospital C", "Clinic D"],
        "COUNTY": ["ADAMS", "ADAMS", "EL PASO", "LA PLATA"],
    })


# ---------------------------------------------------------------------------
# Stage 2 fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def analysis_monthly():
    """Five counties x six years of monthly smoke, rate and facility counts."""
    rng = np.random.default_rng(42)
    rows = []
    counties = [("Adams", 12), ("Boulder", 30), ("Denver", 85), ("Mesa", 9), ("Weld", 20)]
    for county, n_fac in counties:
        for year in range(2011, 2017):
            for month in range(1, 13):
                if 5 <= month <= 9:
                    smoke = rng.gamma(2.0, 15.0)
                else:
                    smoke = rng.gamma(0.5, 2.0)
                rate = rng.gamma(6.0, 2.0) * (1 + 0.005 * smoke)
                rows.append({
                    "county": county, "year": year, "month": month,
                    "smoke_pm25": smoke, "rate": rate, "n_facilities": float(n_fac),
                })
    return pd.DataFrame(rows)


@pytest.fixture
def analysis_seasonal(analysis_monthly):
    season = analysis_monthly[analysis_monthly["month"].between(5, 9)]
    return season.groupby(["county", "year"], as_index=False).agg(
        smoke_pm25=("smoke_pm25", "sum"),
        rate=("rate", "mean"),
        n_facilities=("n_facilities", "mean"),
    )
