import numpy as np
import pytest

import mcmcp.gatekeeper as G
import mcmcp.proposals as P

hypothesis = pytest.importorskip("hypothesis")
from hypothesis import given, settings
from hypothesis import strategies as st

finite = st.floats(min_value=-1e6, max_value=1e6, allow_nan=False, allow_infinity=False)


@given(x=st.lists(finite, min_size=3, max_size=3), h=st.floats(min_value=1e-3, max_value=10.0))
@settings(max_examples=100)
def test_density_never_nan(x, h):
    kde = G.GaussianKDE([[0.0, 0.0, 0.0], [1.0, -1.0, 2.0]], bandwidth=h, dimensionality=3)
    d = kde.density(x)
    assert not np.isnan(d)
    assert np.isfinite(d) or d == float("-inf")


@given(x=st.lists(finite, min_size=2, max_size=2), T=st.floats(min_value=1e-3, max_value=100.0))
@settings(max_examples=50)
def test_self_acceptance_is_half(x, T):
    kde = G.GaussianKDE([[0.0, 0.0]], bandwidth=1.0, dimensionality=2)
    assert kde.acceptance(x, x, T) == 0.5


@given(v=st.floats(min_value=-1e4, max_value=1e4, allow_nan=False))
@settings(max_examples=100)
def test_clamp_wrap_lands_in_range(v):
    out = P.clamp_wrap(v, -10.0, 10.0)
    assert -10.0 <= out <= 10.0
