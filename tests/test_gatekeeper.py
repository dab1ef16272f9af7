import json
import math

import numpy as np
import pytest

import mcmcp.gatekeeper as M
from mcmcp.errors import DimensionMismatchError, GatekeeperLoadError


def _model(centers=((0.0, 0.0), (1.0, 1.0)), bandwidth=0.5):
    return M.GaussianKDE(tree_data=list(centers), bandwidth=bandwidth, dimensionality=len(centers[0]))


def _write(path, **params):
    path.write_text(json.dumps(params), encoding="utf-8")
    return path


def test_density_single_kernel_matches_gaussian():
    kde = M.GaussianKDE([[0.0, 0.0]], bandwidth=1.0, dimensionality=2)
    # standard bivariate normal at the origin
    assert kde.density([0.0, 0.0]) == pytest.approx(-math.log(2 * math.pi))
    assert kde.density([1.0, 0.0]) == pytest.approx(-math.log(2 * math.pi) - 0.5)


def test_density_far_away_stays_finite():
    kde = _model(bandwidth=0.1)
    d = kde.density([50.0, -50.0])
    assert np.isfinite(d)
    assert d < kde.density([0.0, 0.0])


def test_density_dimension_mismatch():
    with pytest.raises(DimensionMismatchError):
        _model().density([0.0, 0.0, 0.0])


@pytest.mark.parametrize("T", [0.5, 1.0, 2.0, 10.0])
def test_acceptance_of_identical_states_is_half(T):
    kde = _model()
    x = [0.3, -0.7]
    assert kde.acceptance(x, x, T) == 0.5


def test_acceptance_prefers_denser_proposal():
    kde = _model()
    hi = kde.acceptance([5.0, 5.0], [0.0, 0.0], 1.0)
    lo = kde.acceptance([0.0, 0.0], [5.0, 5.0], 1.0)
    assert hi > 0.5 > lo
    assert hi + lo == pytest.approx(1.0)


def test_centers_are_read_only():
    kde = _model()
    with pytest.raises(ValueError):
        kde.centers[0, 0] = 99.0


def test_sample_shape_and_mean():
    kde = M.GaussianKDE([[2.0, -3.0]], bandwidth=0.01, dimensionality=2)
    rng = np.random.default_rng(0)
    draws = np.array([kde.sample(rng) for _ in range(200)])
    assert draws.shape == (200, 2)
    assert np.allclose(draws.mean(axis=0), [2.0, -3.0], atol=0.01)


def test_from_json_roundtrip_and_bandwidth_override(tmp_path):
    p = _write(tmp_path / "happy.json", tree_data=[[0, 0], [1, 1]], bandwidth=0.5, dimensionality=2, n_samples=2)
    kde = M.GaussianKDE.from_json(p)
    assert kde.bandwidth == 0.5 and kde.dimensionality == 2 and kde.n_samples == 2
    assert M.GaussianKDE.from_json(p, bandwidth=0.2).bandwidth == 0.2


def test_from_json_missing_file(tmp_path):
    with pytest.raises(GatekeeperLoadError):
        M.GaussianKDE.from_json(tmp_path / "nope.json")


def test_from_json_bad_json(tmp_path):
    p = tmp_path / "bad.json"
    p.write_text("{not json", encoding="utf-8")
    with pytest.raises(GatekeeperLoadError):
        M.GaussianKDE.from_json(p)


def test_from_json_missing_key(tmp_path):
    p = _write(tmp_path / "sad.json", tree_data=[[0, 0]], dimensionality=2, n_samples=1)
    with pytest.raises(GatekeeperLoadError):
        M.GaussianKDE.from_json(p)


def test_from_json_wrong_dimensionality(tmp_path):
    p = _write(tmp_path / "sad.json", tree_data=[[0, 0]], bandwidth=1.0, dimensionality=3, n_samples=1)
    with pytest.raises(GatekeeperLoadError):
        M.GaussianKDE.from_json(p)


@pytest.mark.parametrize(
    "text",
    [
        '{"tree_data": [[0.0, 0.0]], "bandwidth": NaN, "dimensionality": 2, "n_samples": 1}',
        '{"tree_data": [[0.0, 0.0]], "bandwidth": Infinity, "dimensionality": 2, "n_samples": 1}',
        '{"tree_data": [[NaN, 0.0]], "bandwidth": 1.0, "dimensionality": 2, "n_samples": 1}',
        '{"tree_data": [[0.0, -Infinity]], "bandwidth": 1.0, "dimensionality": 2, "n_samples": 1}',
    ],
)
def test_from_json_non_finite(tmp_path, text):
    p = tmp_path / "happy.json"
    p.write_text(text, encoding="utf-8")
    with pytest.raises(GatekeeperLoadError):
        M.GaussianKDE.from_json(p)


def test_non_finite_centers_rejected():
    with pytest.raises(ValueError):
        M.GaussianKDE([[float("nan"), 0.0]], bandwidth=1.0, dimensionality=2)
    with pytest.raises(ValueError):
        M.GaussianKDE([[0.0, 0.0]], bandwidth=float("inf"), dimensionality=2)


def test_load_gatekeepers_per_class(tmp_path):
    for name in ("happy", "sad"):
        _write(tmp_path / f"{name}.json", tree_data=[[0, 0]], bandwidth=1.0, dimensionality=2, n_samples=1)
    models = M.load_gatekeepers(tmp_path, ["happy", "sad"])
    assert set(models) == {"happy", "sad"}
    with pytest.raises(GatekeeperLoadError):
        M.load_gatekeepers(tmp_path, ["happy", "fear"])


def test_category_weights_and_acceptance():
    models = {
        "a": M.GaussianKDE([[0.0, 0.0]], 1.0, 2),
        "b": M.GaussianKDE([[6.0, 6.0]], 1.0, 2),
    }
    w = M.category_weights(models, [0.0, 0.0], temperature=2.0)
    assert sum(w.values()) == pytest.approx(1.0)
    assert w["a"] > w["b"]
    assert M.category_acceptance(models, "a", "b", [0.0, 0.0]) < 0.5
    assert M.category_acceptance(models, "b", "a", [0.0, 0.0]) > 0.5


def test_boltzmann_handles_minus_infinity():
    assert M._boltzmann(float("-inf"), float("-inf"), 1.0) == 0.5
    assert M._boltzmann(0.0, float("-inf"), 1.0) == 0.0
    assert M._boltzmann(float("-inf"), 0.0, 1.0) == 1.0
    with pytest.raises(ValueError):
        M._boltzmann(0.0, 1.0, 0.0)
