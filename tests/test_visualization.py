"""Tests for ldhon.visualization module."""

import os

import numpy as np
import pandas as pd

from ldhon import agg_on, diag_on, stat_on, viz_on
from ldhon.visualization import prediction_grid


class TestPredictionGrid:
    def test_one_curve_per_animal(self, gratio_data):
        df = gratio_data['long_df']
        grid = prediction_grid(df, 'AxonDiameter', ['Genotype'], group='Animal', n=25)

        assert len(grid) == df['Animal'].nunique() * 25
        assert grid['AxonDiameter'].min() == df['AxonDiameter'].min()
        assert grid['AxonDiameter'].max() == df['AxonDiameter'].max()

    def test_animals_keep_their_genotype(self, gratio_data):
        df = gratio_data['long_df']
        grid = prediction_grid(df, 'AxonDiameter', ['Genotype'], group='Animal', n=10)

        observed = df.groupby('Animal')['Genotype'].first()
        assert (grid.groupby('Animal')['Genotype'].nunique() == 1).all()
        pd.testing.assert_series_equal(grid.groupby('Animal')['Genotype'].first(), observed)

    def test_population_grid(self):
        df = pd.DataFrame({'Genotype': ['ctr', 'mut', 'mut'], 'AxonDiameter': [0.5, 1.0, 2.0]})
        grid = prediction_grid(df, 'AxonDiameter', ['Genotype'], group=None, n=4)

        assert list(grid.columns) == ['Genotype', 'AxonDiameter']
        np.testing.assert_allclose(grid['AxonDiameter'].iloc[:4], [0.5, 1.0, 1.5, 2.0])


class TestVizOn:
    def test_fit_plot_for_covariate_model(self, gratio_data):
        data = diag_on(stat_on(agg_on(gratio_data)))
        saved = viz_on(data)

        names = [os.path.basename(p) for p in saved]
        assert names == ['Axons_gratio_fit.pdf', 'Axons_gratio_residuals.pdf']
        assert all(os.path.exists(p) for p in saved)

    def test_emmeans_plot_for_factor_model(self, staining_data):
        data = stat_on(agg_on(staining_data))
        saved = viz_on(data)

        # no simulated residuals yet, so only the data plot is written
        assert [os.path.basename(p) for p in saved] == ['OL_LDHA_emmeans.pdf']
        assert os.path.exists(saved[0])
