#!/usr/bin/env python3
"""
Fetch and check the inputs of the smoke / asthma pipeline.

  Smoke PM2.5: Childs et al. (2022) county-level daily predictions, v1.0
    (2006-2020), Harvard Dataverse doi:10.7910/DVN/DJVMTV. Saved straight to
    the path build_asthma_smoke_dataset.py reads.
  County boundaries: Census cartographic boundary file, 2020, 1:500k. Only
    the shapefile members of the zip are unpacked.
  Asthma rates and health facilities: CDPHE exports placed by hand. These
    are only checked for presence and the columns stage 1 needs.

Files already on disk are never re-downloaded. A download goes to a .part
file first, so an interrupted run leaves nothing that looks complete.

Usage:
  python scripts/download_source_data.py            # fetch + check
  python scripts/download_source_data.py --check    # check only
"""

import argparse
import os
import zipfile
import requests
import pandas as pd

from build_asthma_smoke_dataset import (
    ASTHMA_COLUMNS,
    ASTHMA_FILE,
    COUNTY_DIR,
    EXPECTED_COUNTY_COUNTS,
    FACILITY_COUNTY_COL,
    FACILITY_FILE,
    SMOKE_FILE,
    load_smoke_data,
    normalize_headers,
)

SMOKE_URL = "https://dataverse.harvard.edu/api/access/datafile/8550336"

COUNTY_URL = (
    "https://www2.census.gov/geo/tiger/GENZ2020/shp/"
    "cb_2020_us_county_500k.zip"
)
COUNTY_ZIP = os.path.join(COUNTY_DIR, "cb_2020_us_county_500k.zip")

SHAPEFILE_PARTS = (".shp", ".shx", ".dbf", ".prj", ".cpg")

# Where the hand-placed tables come from
MANUAL_SOURCES = {
    "asthma": "CDPHE Colorado Health Information Dataset, monthly asthma "
              "hospitalization / ED visit rates by county",
    "facilities": "CDPHE health facility listing (one row per facility)",
}


def fetch(url, dest, label):
    """Stream `url` to `dest`. Returns False when `dest` is already present."""
    if os.path.exists(dest):
        print(f"  {label}: have {dest} ({os.path.getsize(dest) / 1e6:.1f} MB)")
        return False

    os.makedirs(os.path.dirname(dest), exist_ok=True)
    partial = dest + ".part"
    print(f"  {label}: fetching {url}")
    n_bytes = 0
    with requests.get(url, stream=True, timeout=600) as resp:
        resp.raise_for_status()
        with open(partial, "wb") as f:
            for chunk in resp.iter_content(chunk_size=1 << 20):
                f.write(chunk)
                n_bytes += len(chunk)
    os.replace(partial, dest)
    print(f"    {n_bytes / 1e6:.1f} MB -> {dest}")
    return True


def unpack_shapefile(zip_path, dest_dir):
    """Unpack the shapefile members of a Census boundary zip.

    Returns the extracted member names, or an empty list if the .shp is
    already in `dest_dir`.
    """
    with zipfile.ZipFile(zip_path) as zf:
        members = [m for m in zf.namelist()
                   if os.path.splitext(m)[1].lower() in SHAPEFILE_PARTS]
        shp = [m for m in members if m.lower().endswith(".shp")]
        if not shp:
            raise ValueError(f"No .shp file inside {zip_path}")
        if os.path.exists(os.path.join(dest_dir, shp[0])):
            print(f"  Boundaries: {shp[0]} already unpacked")
            return []
        zf.extractall(dest_dir, members=members)

    print(f"  Boundaries: unpacked {len(members)} files into {dest_dir}")
    return members


def check_smoke(path=SMOKE_FILE):
    """Counties with at least one smoke day, per checked state."""
    print(f"\nChecking smoke coverage in {path}...")
    states = sorted(EXPECTED_COUNTY_COUNTS)
    smoke = load_smoke_data(path, states=states)
    seen = smoke.groupby(smoke["fips"].str[:2])["fips"].nunique()

    coverage = {}
    for state in states:
        coverage[state] = int(seen.get(state, 0))
        print(f"  State {state}: {coverage[state]} of {EXPECTED_COUNTY_COUNTS[state]} "
              f"counties have smoke days")
    return coverage


def check_manual_inputs():
    """Problems with the hand-placed CDPHE tables, as printable strings."""
    print("\n--- CDPHE Asthma Rates & Health Facilities ---")
    required = [
        (ASTHMA_FILE, list(ASTHMA_COLUMNS), MANUAL_SOURCES["asthma"]),
        (FACILITY_FILE, [FACILITY_COUNTY_COL], MANUAL_SOURCES["facilities"]),
    ]

    problems = []
    for path, columns, source in required:
        if not os.path.exists(path):
            problems.append(f"MISSING: {path}")
            print(f"  MISSING: {path}")
            print(f"    Export it from the {source}")
            continue

        header = normalize_headers(pd.read_csv(path, nrows=0).columns)
        absent = [c for c in columns if c not in header]
        if absent:
            problems.append(f"{path}: missing columns {absent}")
            print(f"  WARNING: {path} lacks columns {absent} (found {list(header)})")
        else:
            print(f"  Found: {path}")
    return problems


def main():
    parser = argparse.ArgumentParser(
        description="Fetch smoke PM2.5 and county boundaries; check the CDPHE tables."
    )
    parser.add_argument(
        "--check", action="store_true",
        help="Do not download anything, only report on what is present"
    )
    args = parser.parse_args()

    print("=" * 60)
    print("Source Data")
    print("=" * 60)

    if not args.check:
        print("\n--- Downloads ---")
        fetch(SMOKE_URL, SMOKE_FILE, "Smoke PM2.5 v1.0")
        fetch(COUNTY_URL, COUNTY_ZIP, "County boundaries")
        unpack_shapefile(COUNTY_ZIP, COUNTY_DIR)

    if os.path.exists(SMOKE_FILE):
        check_smoke(SMOKE_FILE)
    else:
        print(f"\n  MISSING: {SMOKE_FILE}")

    problems = check_manual_inputs()

    print("\n" + "=" * 60)
    if problems:
        print(f"{len(problems)} input(s) need attention before stage 1:")
        for p in problems:
            print(f"  {p}")
    else:
        print("All inputs present. Next: python scripts/build_asthma_smoke_dataset.py")


if __name__ == "__main__":
    main()
