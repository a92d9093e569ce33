"""
Tests for scripts/analyze_asthma_smoke.py (stage 2).

Run with pytest from the project root:

    pytest tests/test_analyze.py -v
"""

import numpy as np
import pandas as pd
import pytest

import analyze_asthma_smoke as analyze


@pytest.fixture
def prepared(analysis_monthly, analysis_seasonal):
    return analyze.prepare_features(analysis_monthly), analyze.prepare_features(analysis_seasonal)


@pytest.fixture
def fits(prepared):
    monthly, seasonal = prepared
    return analyze.run_models(monthly, seasonal, min_obs=10)


# ---------------------------------------------------------------------------
# Feature transforms
# ---------------------------------------------------------------------------

class TestLaggedRate:
    @pytest.fixture
    def table(self):
        # Deliberately not sorted by year: the lag follows row order
        return pd.DataFrame({
            "county": ["A", "A", "A", "B", "B"],
            "year": [2013, 2011, 2012, 2011, 2012],
            "rate": [1.0, 2.0, 3.0, 4.0, 5.0],
        })

    def test_per_county_resets(self, table):
        out = analyze.add_lagged_rate(table, by="county")
        lag = out["rate_lag"].tolist()
        assert np.isnan(lag[0]) and np.isnan(lag[3])
        assert lag[1:3] == [1.0, 2.0]
        assert lag[4] == 4.0

    def test_global_runs_across_counties(self, table):
        out = analyze.add_lagged_rate(table, by=None)
        lag = out["rate_lag"].tolist()
        assert np.isnan(lag[0])
        assert lag[1:] == [1.0, 2.0, 3.0, 4.0]

    def test_order_and_input_preserved(self, table):
        out = analyze.add_lagged_rate(table)
        assert out["year"].tolist() == table["year"].tolist()
        assert "rate_lag" not in table.columns

    def test_default_scope_is_per_county(self):
        assert analyze.LAG_SCOPE == "county"


class TestLogFeatures:
    def test_log1p_identity(self):
        df = pd.DataFrame({
            "rate": [0.0, 1.0, 12.5],
            "rate_lag": [np.nan, 0.0, 1.0],
            "smoke_pm25": [0.0, 250.0, 3.0],
            "n_facilities": [1.0, np.nan, 40.0],
        })
        out = analyze.add_log_features(df)

        assert out.loc[0, "log_rate"] == 0.0
        assert out.loc[0, "log_smoke_pm25"] == 0.0
        assert out.loc[2, "log_rate"] == pytest.approx(np.log(13.5))
        assert out.loc[1, "log_smoke_pm25"] == pytest.approx(np.log(251.0))
        assert np.isnan(out.loc[0, "log_rate_lag"])
        assert np.isnan(out.loc[1, "log_n_facilities"])

    def test_prepare_features_adds_all_columns(self, analysis_monthly):
        out = analyze.prepare_features(analysis_monthly)
        for col in ["rate_lag"] + list(analyze.LOG_FEATURES.values()):
            assert col in out.columns
        # One leading null per county
        assert out["log_rate_lag"].isna().sum() == analysis_monthly["county"].nunique()


# ---------------------------------------------------------------------------
# Regression runner
# ---------------------------------------------------------------------------

class TestFitPoisson:
    def test_fits_with_year_fixed_effects(self, prepared):
        monthly, _ = prepared
        res = analyze.fit_poisson(monthly, "log_rate", min_obs=10, label="test")

        assert res is not None
        assert int(res.nobs) == len(monthly)
        for var in analyze.PREDICTORS:
            assert np.isfinite(res.params[var])
            assert res.bse[var] > 0
        year_terms = [t for t in res.params.index if t.startswith("C(year)")]
        assert len(year_terms) == monthly["year"].nunique() - 1

    def test_rows_with_nulls_are_dropped(self, prepared):
        monthly, _ = prepared
        res = analyze.fit_poisson(monthly, "log_rate_lag", min_obs=10, label="lag")
        assert int(res.nobs) == monthly["log_rate_lag"].notna().sum()

    def test_too_few_rows_skips(self, prepared, capsys):
        monthly, _ = prepared
        assert analyze.fit_poisson(monthly.head(5), "log_rate", min_obs=10, label="tiny") is None
        assert "SKIP tiny" in capsys.readouterr().out


class TestRunModels:
    def test_three_specifications(self, fits, prepared):
        monthly, seasonal = prepared
        assert list(fits) == [label for label, _, _ in analyze.MODEL_SPECS]
        assert all(res is not None for res in fits.values())

        assert fits["(1) Monthly"].model.endog_names == "log_rate"
        assert fits["(2) Monthly, lagged rate"].model.endog_names == "log_rate_lag"
        assert int(fits["(3) Fire season"].nobs) == len(seasonal)

    def test_failed_fit_does_not_affect_others(self, prepared, monkeypatch, capsys):
        monthly, seasonal = prepared
        real_glm = analyze.smf.glm

        def flaky_glm(formula, *args, **kwargs):
            if formula.startswith("log_rate_lag"):
                raise np.linalg.LinAlgError("Singular matrix")
            return real_glm(formula, *args, **kwargs)

        monkeypatch.setattr(analyze.smf, "glm", flaky_glm)
        fits = analyze.run_models(monthly, seasonal, min_obs=10)

        assert fits["(2) Monthly, lagged rate"] is None
        assert fits["(1) Monthly"] is not None
        assert fits["(3) Fire season"] is not None
        assert "ERROR in (2) Monthly, lagged rate" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

class TestComparisonTable:
    def test_layout(self, fits):
        table = analyze.build_comparison_table(fits)
        text = table.as_text()

        assert list(table.tables[0].columns) == list(fits)
        for var in analyze.PREDICTORS:
            assert var in text
        assert "Year FE" in text
        assert "C(year)" not in text
        for stat in analyze.OMIT_GOF:
            assert stat not in text
        assert "R-squared" not in text

    def test_failed_models_left_out(self, fits):
        partial = dict(fits)
        partial["(2) Monthly, lagged rate"] = None
        table = analyze.build_comparison_table(partial)
        assert list(table.tables[0].columns) == ["(1) Monthly", "(3) Fire season"]

    def test_nothing_fitted(self):
        assert analyze.build_comparison_table({"(1) Monthly": None}) is None

    def test_export_formats(self, fits, tmp_path):
        table = analyze.build_comparison_table(fits)
        paths = analyze.export_comparison_table(table, str(tmp_path / "tables" / "comparison"))

        assert [p.rsplit(".", 1)[1] for p in paths] == ["tex", "html", "png"]
        for path in paths:
            assert (tmp_path / "tables" / path.rsplit("/", 1)[1]).stat().st_size > 0
        with open(paths[1]) as f:
            assert "log_smoke_pm25" in f.read()


class TestPlots:
    def test_coefficient_frame(self, fits):
        coefs = analyze.coefficient_frame(fits["(1) Monthly"])
        assert set(coefs["term"]) == set(analyze.PREDICTORS)
        magnitudes = coefs["estimate"].abs().tolist()
        assert magnitudes == sorted(magnitudes)
        assert (coefs["ci_low"] <= coefs["estimate"]).all()
        assert (coefs["estimate"] <= coefs["ci_high"]).all()

    def test_coefficient_plot_with_failed_model(self, fits, tmp_path):
        partial = dict(fits)
        partial["(3) Fire season"] = None
        path = tmp_path / "figures" / "coefficient_plot.png"
        analyze.plot_coefficients(partial, str(path))
        assert path.stat().st_size > 0

    def test_rate_histogram(self, analysis_monthly, tmp_path):
        path = tmp_path / "rate_histogram.png"
        analyze.plot_rate_histogram(analysis_monthly, str(path))
        assert path.stat().st_size > 0
