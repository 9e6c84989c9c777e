"""Tests for ldhon.prep module."""

import numpy as np
import pandas as pd
import pytest

from conftest import write_workbook
from ldhon import GenotypeMismatchError, LoadError
from ldhon.prep import check_genotypes, normalize_genotype, read_sheet


class TestReadSheet:
    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(LoadError, match='Workbook not found'):
            read_sheet(str(tmp_path / 'absent.xlsx'), 'LDHA')

    def test_missing_sheet_raises(self, tmp_path, rnascope_frame):
        path = write_workbook(tmp_path / 'r.xlsx', {'LDHA': rnascope_frame})
        with pytest.raises(LoadError, match="Sheet 'LDHB' not found"):
            read_sheet(path, 'LDHB')

    def test_missing_column_raises(self, tmp_path, rnascope_frame):
        path = write_workbook(tmp_path / 'r.xlsx', {'LDHA': rnascope_frame.drop(columns=['Dots'])})
        with pytest.raises(LoadError, match='Dots'):
            read_sheet(path, 'LDHA', required_columns=['Animal', 'Dots'])

    def test_blank_and_text_cells_become_nan(self, tmp_path):
        df = pd.DataFrame({
            'Animal': ['A1', 'A1', 'A1'],
            'AxonArea': [1.5, None, 'n.d.'],
        })
        path = write_workbook(tmp_path / 'em.xlsx', {'Axons': df})

        result = read_sheet(path, 'Axons', numeric_columns=['AxonArea'])

        assert result['AxonArea'].dtype == float
        assert result['AxonArea'].iloc[0] == 1.5
        assert result['AxonArea'].iloc[1:].isna().all()
        assert (result['AxonArea'].fillna(-1) != 0).all()

    def test_header_whitespace_is_stripped(self, tmp_path):
        df = pd.DataFrame({' Animal ': ['A1'], 'Dots ': [3]})
        path = write_workbook(tmp_path / 'r.xlsx', {'LDHA': df})

        result = read_sheet(path, 'LDHA', required_columns=['Animal', 'Dots'])
        assert list(result.columns) == ['Animal', 'Dots']


class TestGenotypes:
    def test_consistent_genotypes_pass(self):
        df = pd.DataFrame({'Animal': ['A1', 'A1', 'B1'], 'Genotype': ['ctr', 'ctr', 'mut']})
        check_genotypes(df)

    def test_inconsistent_genotype_is_rejected(self):
        df = pd.DataFrame({
            'Animal': ['A1', 'A1', 'A1', 'B1'],
            'Image': ['i1', 'i2', 'i3', 'i1'],
            'Genotype': ['ctr', 'ctr', 'mut', 'mut'],
        })
        with pytest.raises(GenotypeMismatchError) as excinfo:
            check_genotypes(df)

        assert set(excinfo.value.mismatches) == {'A1'}
        assert excinfo.value.mismatches['A1'] == {'ctr', 'mut'}

    def test_missing_genotype_is_rejected(self):
        df = pd.DataFrame({'Animal': ['A1', 'B1'], 'Genotype': ['ctr', np.nan]})
        with pytest.raises(LoadError, match='B1'):
            check_genotypes(df)

    def test_labels_are_normalized(self):
        assert normalize_genotype(' WT ') == 'ctr'
        assert normalize_genotype('Mut') == 'mut'
        assert normalize_genotype('cKO') == 'mut'


class TestPrepOn:
    def test_returns_required_keys(self, staining_data):
        for key in ('df', 'config', 'analysis', 'metadata', 'output_dirs', 'drops'):
            assert key in staining_data

    def test_metadata_counts_are_consistent(self, staining_data, staining_frame):
        metadata = staining_data['metadata']
        assert metadata['n_rows'] == len(staining_frame)
        assert metadata['n_animals'] == 6
        assert metadata['per_genotype']['ctr']['n_animals'] == 3

    def test_mixed_case_genotypes_are_accepted(self, loaded_config, tmp_path, rnascope_frame):
        from ldhon import prep_on
        from ldhon.analysis import resolve_analysis

        frame = rnascope_frame.copy()
        frame['Genotype'] = frame['Genotype'].map({'ctr': 'WT', 'mut': 'Mut'})
        loaded_config['data_paths']['rnascope'] = write_workbook(tmp_path / 'mixed.xlsx', {'LDHA': frame})

        entry = {'kind': 'rnascope', 'workbook': 'rnascope', 'sheet': 'LDHA'}
        data = prep_on(loaded_config, resolve_analysis(entry, loaded_config['columns']))

        assert set(data['df']['Genotype']) == {'ctr', 'mut'}

    def test_blank_animal_is_dropped_not_named_nan(self, loaded_config, tmp_path, rnascope_frame):
        from ldhon import prep_on
        from ldhon.analysis import resolve_analysis

        frame = rnascope_frame.copy()
        frame['Animal'] = frame['Animal'].astype(object)
        frame.loc[0, 'Animal'] = None
        frame.loc[1, 'Animal'] = '  '
        loaded_config['data_paths']['rnascope'] = write_workbook(tmp_path / 'blank.xlsx', {'LDHA': frame})

        entry = {'kind': 'rnascope', 'workbook': 'rnascope', 'sheet': 'LDHA'}
        data = prep_on(loaded_config, resolve_analysis(entry, loaded_config['columns']))

        assert 'nan' not in set(data['df']['Animal'])
        assert data['df']['Animal'].notna().all()
        assert data['metadata']['n_animals'] == 6
        assert data['metadata']['n_rows'] == len(frame) - 2
        assert data['drops']['missing_animal_or_image'] == 2

    def test_unknown_workbook_raises(self, loaded_config):
        from ldhon import prep_on
        from ldhon.analysis import resolve_analysis

        entry = {'kind': 'rnascope', 'workbook': 'not_configured', 'sheet': 'LDHA'}
        with pytest.raises(LoadError, match='not_configured'):
            prep_on(loaded_config, resolve_analysis(entry, loaded_config['columns']))
