"""
Monte Carlo behaviour of the power sweep: calibration under the null,
monotonicity in b, power loss under heterogeneous correlation, agreement
with the correctly specified GLS reference and reproducibility across
worker counts.
"""

import math

import numpy as np
import pytest

import corr_misspec.power_corr_misspec as pcm


def _spec(**overrides) -> pcm.CorrMisspecSpec:
    params = dict(n_per_group=50, b=0.0, r11=0.6, r12=0.2, alpha=0.05, model="common", seed=2024)
    params.update(overrides)
    return pcm.CorrMisspecSpec(**params)


class TestNullCalibration:
    def test_common_model_type1_near_nominal(self):
        spec = _spec(n_per_group=100, r11=0.6, r12=0.6)
        sims = 400
        est = pcm.simulate_power(spec, sims=sims, n_jobs=2)
        mc_se = pcm.monte_carlo_se(0.05, est.n_valid)
        assert est.n_valid + est.n_failed == sims
        assert abs(est.power - 0.05) <= 3.5 * mc_se + 0.005
        assert est.avg_coef == pytest.approx(0.0, abs=0.02)

    def test_type1_grid_rows(self):
        table = pcm.type1_error_grid(
            _spec(model="gls_known"),
            [(0.6, 0.6), (0.6, 0.2)],
            sims=200,
        )
        assert table[["r11", "r12"]].values.tolist() == [[0.6, 0.6], [0.6, 0.2]]
        assert (table["model"] == "gls_known").all()
        assert (table["n_valid"] == 200).all()
        assert table["type1_error"].between(0.0, 0.13).all()
        assert (table["ci_low"] <= table["type1_error"]).all()
        assert (table["type1_error"] <= table["ci_high"]).all()


class TestPowerCurve:
    @pytest.mark.parametrize("model", ["common", "dummy"])
    def test_monotone_in_b(self, model):
        curve = pcm.power_curve(_spec(model=model), [0.0, 0.3, 0.6], sims=150)
        assert list(curve.columns) == ["b", "power", "ci_low", "ci_high", "n_valid", "n_failed"]
        powers = curve["power"].tolist()
        assert all(x <= y for x, y in zip(powers, powers[1:]))
        assert powers[-1] > powers[0] + 0.3

    def test_heterogeneous_correlation_loses_power(self):
        b_values = [0.4, 0.6]
        het = pcm.power_curve(_spec(r11=0.6, r12=0.2), b_values, sims=200)
        homo = pcm.power_curve(_spec(r11=0.6, r12=0.6), b_values, sims=200)
        assert (het["power"].to_numpy() < homo["power"].to_numpy()).all()

    def test_common_model_tracks_gls_reference_when_homogeneous(self):
        b_values = [0.0, 0.4]
        common = pcm.power_curve(_spec(r11=0.5, r12=0.5), b_values, sims=150)
        gls = pcm.power_curve(_spec(r11=0.5, r12=0.5, model="gls_known"), b_values, sims=150)
        np.testing.assert_allclose(common["power"], gls["power"], atol=0.06)

    def test_simulation_close_to_analytic_reference(self):
        spec = _spec(b=0.4)
        est = pcm.simulate_power(spec, sims=300)
        expected = pcm.analytic_power_time(spec.n_per_group, spec.b, spec.r11, spec.r12, spec.alpha)
        assert abs(est.power - expected) <= 3.5 * pcm.monte_carlo_se(expected, 300) + 0.02

    def test_compare_power_curves_long_format(self):
        scenarios = {
            "heterogeneous": _spec(model="gls_known"),
            "homogeneous": _spec(r12=0.6, model="gls_known"),
        }
        table = pcm.compare_power_curves(scenarios, [0.0, 0.5], sims=60)
        assert table.columns[0] == "scenario"
        assert table["scenario"].tolist() == ["heterogeneous", "heterogeneous", "homogeneous", "homogeneous"]

    def test_empty_inputs_rejected(self):
        with pytest.raises(ValueError):
            pcm.power_curve(_spec(), [], sims=10)
        with pytest.raises(ValueError):
            pcm.compare_power_curves({}, [0.0], sims=10)
        with pytest.raises(ValueError, match="corr_pairs"):
            pcm.type1_error_grid(_spec(), [], sims=10)


class TestReproducibility:
    def test_same_seed_same_estimate(self):
        spec = _spec(b=0.3)
        first = pcm.simulate_power(spec, sims=48, chunk_size=16)
        second = pcm.simulate_power(spec, sims=48, chunk_size=16)
        assert first == second

    def test_parallel_matches_serial_for_fixed_chunks(self):
        spec = _spec(b=0.3)
        serial, coefs_s, pvals_s = pcm.simulate_distribution(spec, sims=48, n_jobs=1, chunk_size=16)
        parallel, coefs_p, pvals_p = pcm.simulate_distribution(spec, sims=48, n_jobs=3, chunk_size=16)
        assert serial.hits == parallel.hits
        assert serial.n_valid == parallel.n_valid
        np.testing.assert_allclose(coefs_s, coefs_p, rtol=1e-8)
        np.testing.assert_allclose(pvals_s, pvals_p, rtol=1e-6)

    def test_distribution_arrays(self):
        est, coefs, pvals = pcm.simulate_distribution(_spec(b=0.2, model="dummy"), sims=20)
        assert coefs.shape == (20,) and pvals.shape == (20,)
        valid = ~np.isnan(pvals)
        assert valid.sum() == est.n_valid
        assert ((pvals[valid] >= 0) & (pvals[valid] <= 1)).all()
        assert est.hits == int((pvals[valid] < 0.05).sum())


def test_find_n_for_power_meets_target():
    base = _spec(b=0.5, r12=0.6, model="gls_known", seed=99)
    n_req, pw = pcm.find_n_for_power(0.8, base, sims=200, n_min=10, n_max=80, tol=0.02)
    assert pw >= 0.78
    n_analytic, _ = pcm.analytic_n_for_power(0.8, 0.5, base.r11, base.r12, base.alpha)
    assert abs(n_req - n_analytic) <= 0.35 * n_analytic


def test_find_n_for_power_rejects_null_effect():
    with pytest.raises(ValueError, match="non-zero"):
        pcm.find_n_for_power(0.8, _spec(b=0.0), sims=10)


# ---------------- Full-size scenarios (R = 1500) ----------------


@pytest.mark.slow
def test_null_scenario_n100_r06_r06():
    spec = _spec(n_per_group=100, b=0.0, r11=0.6, r12=0.6, seed=12345)
    est = pcm.simulate_power(spec, sims=1500, n_jobs=-1)
    assert est.n_failed <= 15
    assert abs(est.power - 0.05) <= 0.02


@pytest.mark.slow
def test_heterogeneous_grid_scenario_monotone():
    spec = _spec(n_per_group=100, r11=0.6, r12=0.2, seed=12345)
    curve = pcm.power_curve(spec, pcm.DEFAULT_B_GRID, sims=1500, n_jobs=-1)
    powers = curve["power"].to_numpy()
    assert len(powers) == 11
    assert np.all(np.diff(powers) >= 0)
    assert powers[-1] > 0.8
    assert math.isclose(curve["b"].iloc[-1], 0.5)
