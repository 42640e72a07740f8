"""Tests for RMA preprocessing."""

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from tcell_states.microarray.raw import RawIntensityMatrix
from tcell_states.microarray.rma import (
    _nrd0_factor,
    background_correct,
    background_parameters,
    bw_nrd0,
    log2_intensities,
    max_density,
    median_polish,
    quantile_normalize,
    rma,
    summarize,
)


def _make_raw(n_probesets=100, probes_per_set=5, n_samples=4, seed=1):
    """Log-normal probe intensities with a probe-set effect and per-array scaling."""
    rng = np.random.RandomState(seed)
    set_level = np.repeat(rng.uniform(6, 12, size=n_probesets), probes_per_set)
    probe_effect = rng.normal(0, 0.5, size=len(set_level))
    array_shift = rng.normal(0, 0.3, size=n_samples)
    log_values = (
        set_level[:, None] + probe_effect[:, None] + array_shift[None, :]
        + rng.normal(0, 0.1, size=(len(set_level), n_samples))
    )
    probesets = [f"PS{i:03d}" for i in range(n_probesets) for _ in range(probes_per_set)]
    return RawIntensityMatrix(
        intensities=2 ** log_values,
        probe_ids=[f"p{i}" for i in range(len(probesets))],
        probesets=probesets,
        samples=[f"GSM{j + 1}" for j in range(n_samples)],
    )


class TestDensity:

    def test_max_density_finds_mode(self):
        rng = np.random.RandomState(0)
        values = rng.normal(50, 5, size=5000)
        assert max_density(values) == pytest.approx(50, abs=1.5)

    def test_max_density_constant(self):
        assert max_density(np.full(10, 3.0)) == 3.0

    def test_max_density_empty(self):
        with pytest.raises(ValueError):
            max_density(np.array([np.nan]))

    def test_subsample_is_deterministic(self):
        rng = np.random.RandomState(0)
        values = rng.exponential(100, size=50_000)
        assert max_density(values) == max_density(values.copy())

    def test_bw_nrd0_matches_r(self):
        # bw.nrd0(1:5) in R
        assert bw_nrd0(np.arange(1, 6)) == pytest.approx(0.97362, abs=1e-4)

    def test_bw_nrd0_zero_iqr_uses_sd(self):
        values = np.array([1.0, 1.0, 1.0, 1.0, 5.0])
        expected = 0.9 * np.std(values, ddof=1) * 5 ** -0.2
        assert bw_nrd0(values) == pytest.approx(expected)

    def test_bw_nrd0_constant(self):
        assert bw_nrd0(np.full(5, 4.0)) == pytest.approx(0.9 * 4.0 * 5 ** -0.2)

    def test_kde_uses_nrd0_bandwidth(self):
        rng = np.random.RandomState(3)
        values = rng.lognormal(5, 1, size=400)
        kde = stats.gaussian_kde(values, bw_method=_nrd0_factor)
        assert np.sqrt(kde.covariance[0, 0]) == pytest.approx(bw_nrd0(values))
        # 0.9 * min(sd, IQR / 1.34) is below the sd that Scott's rule scales
        assert bw_nrd0(values) < np.sqrt(stats.gaussian_kde(values).covariance[0, 0])


class TestBackground:

    def test_parameters_are_positive(self):
        rng = np.random.RandomState(2)
        pm = rng.normal(100, 10, size=4000) + rng.exponential(200, size=4000)
        alpha, mu, sigma = background_parameters(pm)
        assert alpha > 0
        assert sigma > 0
        assert 50 < mu < 200

    def test_corrected_values_are_positive_and_ordered(self):
        raw = _make_raw()
        corrected = background_correct(np.array(raw.intensities))
        assert (corrected > 0).all()
        for j in range(corrected.shape[1]):
            order = np.argsort(raw.intensities[:, j])
            assert (np.diff(corrected[order, j]) >= -1e-9).all()


class TestQuantileNormalize:

    def test_columns_share_one_distribution(self):
        rng = np.random.RandomState(3)
        values = rng.lognormal(size=(200, 3)) * np.array([1.0, 2.0, 5.0])
        normalized = quantile_normalize(values)
        sorted_cols = np.sort(normalized, axis=0)
        np.testing.assert_allclose(sorted_cols[:, 0], sorted_cols[:, 1])
        np.testing.assert_allclose(sorted_cols[:, 0], sorted_cols[:, 2])

    def test_preserves_ranks(self):
        values = np.array([[5.0, 1.0], [1.0, 2.0], [3.0, 3.0]])
        normalized = quantile_normalize(values)
        assert list(np.argsort(normalized[:, 0])) == [1, 2, 0]

    def test_ties_share_average(self):
        values = np.array([[1.0, 1.0], [1.0, 2.0], [3.0, 3.0]])
        normalized = quantile_normalize(values)
        assert normalized[0, 0] == normalized[1, 0]


class TestMedianPolish:

    def test_additive_block_is_recovered(self):
        rows = np.array([0.0, 1.0, -2.0, 0.5])
        cols = np.array([3.0, 4.5, 2.0])
        block = 7.0 + rows[:, None] + cols[None, :]
        summary = median_polish(block)
        np.testing.assert_allclose(np.diff(summary), np.diff(cols))

    def test_robust_to_outlier_probe(self):
        block = np.array([[5.0, 6.0], [5.1, 6.1], [4.9, 5.9], [20.0, 0.0]])
        summary = median_polish(block)
        assert summary[1] - summary[0] == pytest.approx(1.0, abs=0.05)

    def test_summarize_single_probe_sets(self):
        values = np.array([[1.0, 2.0], [3.0, 4.0]])
        ids, summary = summarize(values, np.array(["b", "a"], dtype=object))
        assert list(ids) == ["a", "b"]
        np.testing.assert_array_equal(summary, [[3.0, 4.0], [1.0, 2.0]])


class TestRma:

    def test_shape_and_index(self):
        raw = _make_raw()
        expression = rma(raw)
        assert expression.shape == (100, 4)
        assert expression.index.name == "probeset"
        assert list(expression.columns) == list(raw.samples)
        assert expression.index.is_monotonic_increasing
        assert np.isfinite(expression.to_numpy()).all()

    def test_deterministic(self):
        raw = _make_raw()
        pd.testing.assert_frame_equal(rma(raw), rma(raw))

    def test_input_is_not_modified(self):
        raw = _make_raw()
        before = raw.intensities.copy()
        rma(raw)
        np.testing.assert_array_equal(raw.intensities, before)

    def test_normalized_medians_agree(self):
        expression = rma(_make_raw())
        medians = expression.median()
        assert medians.max() - medians.min() < 0.2

    def test_log2_only(self):
        raw = RawIntensityMatrix(
            np.array([[4.0, 8.0], [16.0, 0.5]]), ("p1", "p2"), ("A", "B"), ("GSM1", "GSM2")
        )
        expression = rma(raw, background=False, normalize=False)
        np.testing.assert_allclose(expression.loc["A"], [2.0, 3.0])
        np.testing.assert_allclose(expression.loc["B"], [4.0, 0.0])

    def test_log2_intensities(self):
        raw = RawIntensityMatrix(np.array([[4.0], [0.0]]), ("p1", "p2"), ("A", "B"), ("GSM1",))
        frame = log2_intensities(raw)
        assert frame.loc["p1", "GSM1"] == 2.0
        assert frame.loc["p2", "GSM1"] == 0.0
