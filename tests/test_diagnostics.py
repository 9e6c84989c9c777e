"""Tests for ldhon.diagnostics module."""

import os

import numpy as np
import pytest

from ldhon import agg_on, diag_on, fit_model, stat_on
from ldhon import diagnostics


@pytest.fixture
def count_models(rnascope_data):
    df = rnascope_data['long_df']
    return {
        'negative_binomial': fit_model('Dots ~ Genotype', df, family='negative_binomial'),
        'poisson': fit_model('Dots ~ Genotype', df, family='poisson'),
    }


class TestSimulateResiduals:
    def test_shapes_and_range(self, count_models):
        model = count_models['negative_binomial']
        sim = diagnostics.simulate_residuals(model, n_sim=50, seed=3)

        n = len(model.frame)
        assert sim['simulated'].shape == (n, 50)
        assert len(sim['scaled']) == n
        assert ((sim['scaled'] >= 0) & (sim['scaled'] <= 1)).all()

    def test_same_seed_same_residuals(self, count_models):
        model = count_models['poisson']
        first = diagnostics.simulate_residuals(model, n_sim=30, seed=5)
        second = diagnostics.simulate_residuals(model, n_sim=30, seed=5)

        np.testing.assert_array_equal(first['scaled'], second['scaled'])

    def test_gaussian_model(self, gratio_data):
        model = fit_model('gRatio ~ AxonDiameter * Genotype', gratio_data['long_df'])
        sim = diagnostics.simulate_residuals(model, n_sim=100, seed=1)

        assert sim['family'] == 'gaussian'
        assert ((sim['scaled'] >= 0) & (sim['scaled'] <= 1)).all()


class TestDispersion:
    def test_poisson_is_overdispersed(self, count_models):
        sim = diagnostics.simulate_residuals(count_models['poisson'], n_sim=100, seed=1)
        result = diagnostics.test_dispersion(sim)

        assert result['flagged']
        assert result['direction'] == 'over'
        assert result['statistic'] > 2

    def test_negative_binomial_matches_spread(self, count_models):
        sim = diagnostics.simulate_residuals(count_models['negative_binomial'], n_sim=100, seed=1)
        result = diagnostics.test_dispersion(sim)

        assert 0.5 < result['statistic'] < 2
        assert 0 <= result['p_value'] <= 1
        assert not result['flagged']


class TestUniformity:
    def test_reports_ks_statistic(self, count_models):
        sim = diagnostics.simulate_residuals(count_models['negative_binomial'], n_sim=100, seed=1)
        result = diagnostics.test_uniformity(sim)

        assert result['test'] == 'uniformity'
        assert 0 <= result['statistic'] <= 1
        assert 0 <= result['p_value'] <= 1


class TestDiagOn:
    def test_compares_count_families(self, rnascope_data):
        result = diag_on(stat_on(agg_on(rnascope_data)))
        table = result['diagnostics']

        assert set(table['family']) == {'negative_binomial', 'poisson'}
        assert set(table['test']) == {'dispersion', 'uniformity'}
        assert result['simulation']['family'] == 'negative_binomial'

        dispersion = table[table['test'] == 'dispersion'].set_index('family')['statistic']
        assert dispersion['poisson'] > dispersion['negative_binomial']

        path = os.path.join(result['output_dirs']['tables'], 'RNAscope_LDHA_diagnostics.csv')
        assert os.path.exists(path)

    def test_gaussian_single_family(self, gratio_data):
        result = diag_on(stat_on(agg_on(gratio_data)))

        assert set(result['diagnostics']['family']) == {'gaussian'}
        assert len(result['diagnostics']) == 2
