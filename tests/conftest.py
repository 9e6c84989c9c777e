"""Shared test fixtures for LDH optic-nerve pipeline tests."""

import matplotlib
matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest
import yaml

CTR_ANIMALS = ['A1', 'A2', 'A3']
MUT_ANIMALS = ['B1', 'B2', 'B3']


def _animals():
    return [(a, 'ctr') for a in CTR_ANIMALS] + [(a, 'mut') for a in MUT_ANIMALS]


def write_workbook(path, sheets):
    """Write {sheet name: DataFrame} to an .xlsx file."""
    with pd.ExcelWriter(path) as writer:
        for name, df in sheets.items():
            df.to_excel(writer, sheet_name=name, index=False)
    return str(path)


@pytest.fixture
def staining_frame():
    """OL sheet: oligodendrocyte, myelin and axon regions per image."""
    np.random.seed(42)
    rows = []
    nr = 0
    for animal, genotype in _animals():
        animal_shift = np.random.normal(0, 0.3)
        base = 6.0 if genotype == 'ctr' else 2.5
        for image in range(1, 5):
            for k in range(3):
                nr += 1
                row = {'Animal': animal, 'Nr': nr, 'Image': f"{animal}_img{image}", 'Genotype': genotype}
                for structure, scale in (('Oligo', 1.0), ('Myelin', 0.6), ('Axon', 0.8)):
                    area = np.random.uniform(0.5, 3.0)
                    density = max(0.1, base * scale + animal_shift + np.random.normal(0, 0.5))
                    row[f"{structure}Area"] = area
                    row[f"{structure}Gold"] = float(np.round(density * area))
                # a single oligodendrocyte is quantified per image
                row['OligoArea'] = row['OligoArea'] if k == 0 else np.nan
                row['OligoGold'] = row['OligoGold'] if k == 0 else np.nan
                rows.append(row)
    df = pd.DataFrame(rows)
    # one row without a myelin gold count
    df.loc[0, 'MyelinGold'] = np.nan
    return df


@pytest.fixture
def axon_frame():
    """Axons sheet: one myelinated axon per row."""
    np.random.seed(7)
    rows = []
    for animal, genotype in _animals():
        offset = np.random.normal(0, 0.01)
        for image in range(1, 4):
            for _ in range(8):
                axon_d = np.random.uniform(0.4, 2.0)
                g = 0.62 + 0.05 * axon_d + (0.06 if genotype == 'mut' else 0.0) + offset
                g += np.random.normal(0, 0.02)
                fiber_d = axon_d / g
                axon_area = np.pi * (axon_d / 2) ** 2
                fiber_area = np.pi * (fiber_d / 2) ** 2
                rows.append({
                    'Animal': animal,
                    'Image': f"{animal}_img{image}",
                    'Genotype': genotype,
                    'AxonArea': axon_area,
                    'FiberArea': fiber_area,
                    'AxonGold': float(np.random.poisson((5 if genotype == 'ctr' else 2) * axon_area + 0.5)),
                })
    # negative-control image, a zero fiber area and an axon larger than its fiber
    rows.append({'Animal': 'A1', 'Image': 'A1_NEG_ctrl', 'Genotype': 'ctr',
                 'AxonArea': 1.0, 'FiberArea': 2.0, 'AxonGold': 0.0})
    rows.append({'Animal': 'A2', 'Image': 'A2_img1', 'Genotype': 'ctr',
                 'AxonArea': 1.0, 'FiberArea': 0.0, 'AxonGold': 1.0})
    rows.append({'Animal': 'B1', 'Image': 'B1_img1', 'Genotype': 'mut',
                 'AxonArea': 2.0, 'FiberArea': 1.5, 'AxonGold': 1.0})
    return pd.DataFrame(rows)


@pytest.fixture
def rnascope_frame():
    """RNAscope sheet: over-dispersed transcript dots per cell."""
    rng = np.random.default_rng(11)
    rows = []
    for animal, genotype in _animals():
        mu_animal = (12.0 if genotype == 'ctr' else 5.0) * np.exp(rng.normal(0, 0.1))
        for image in range(1, 4):
            for cell in range(1, 16):
                size = 2.0
                dots = rng.negative_binomial(size, size / (size + mu_animal))
                rows.append({'Animal': animal, 'Image': f"{animal}_img{image}",
                             'Genotype': genotype, 'Cell': cell, 'Dots': dots})
    return pd.DataFrame(rows)


@pytest.fixture
def sample_config(tmp_path, staining_frame, axon_frame, rnascope_frame):
    """Create workbooks and a matching YAML config for testing."""
    em_path = write_workbook(tmp_path / 'em_on.xlsx', {
        'OL - LDHA': staining_frame,
        'Axons - LDHA': axon_frame,
    })
    rnascope_path = write_workbook(tmp_path / 'rnascope.xlsx', {'LDHA': rnascope_frame})

    config = {
        'experiment': {'name': 'Test_Experiment', 'description': 'Unit test experiment'},
        'data_paths': {
            'em_optic_nerve': em_path,
            'rnascope': rnascope_path,
            'output_dir': str(tmp_path / 'results'),
        },
        'options': {
            'export_intermediate': False,
            'n_simulations': 100,
            'seed': 1,
        },
        'analyses': [
            {'name': 'OL_LDHA', 'kind': 'staining', 'workbook': 'em_optic_nerve', 'sheet': 'OL - LDHA'},
            {'name': 'Axons_gratio', 'kind': 'gratio', 'workbook': 'em_optic_nerve', 'sheet': 'Axons - LDHA'},
            {'name': 'Axons_density', 'kind': 'axon_staining', 'workbook': 'em_optic_nerve', 'sheet': 'Axons - LDHA'},
            {'name': 'RNAscope_LDHA', 'kind': 'rnascope', 'workbook': 'rnascope', 'sheet': 'LDHA',
             'count_column': 'Dots'},
        ],
    }

    config_path = str(tmp_path / 'test_config.yaml')
    with open(config_path, 'w') as f:
        yaml.dump(config, f)

    return config_path, tmp_path


@pytest.fixture
def loaded_config(sample_config):
    from ldhon.utils import _load_config

    config_path, _ = sample_config
    return _load_config(config_path)


def _stage_input(loaded_config, name):
    from ldhon.analysis import resolve_analysis

    entry = next(e for e in loaded_config['analyses'] if e['name'] == name)
    return resolve_analysis(entry, loaded_config['columns'])


@pytest.fixture
def staining_data(loaded_config):
    """Run prep_on and shape_on for the OL staining analysis."""
    from ldhon import prep_on, shape_on

    return shape_on(prep_on(loaded_config, _stage_input(loaded_config, 'OL_LDHA')))


@pytest.fixture
def gratio_data(loaded_config):
    """Run prep_on and shape_on for the g-ratio analysis."""
    from ldhon import prep_on, shape_on

    return shape_on(prep_on(loaded_config, _stage_input(loaded_config, 'Axons_gratio')))


@pytest.fixture
def rnascope_data(loaded_config):
    """Run prep_on and shape_on for the RNAscope analysis."""
    from ldhon import prep_on, shape_on

    return shape_on(prep_on(loaded_config, _stage_input(loaded_config, 'RNAscope_LDHA')))
