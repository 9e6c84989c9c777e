"""
Utility functions for the LDH optic-nerve pipeline.

Internal helpers for configuration loading, directory management,
report headers and data serialization.
"""

import copy
import os
import pickle

import yaml

DEFAULT_OPTIONS = {
    'export_intermediate': False,
    'negative_control_marker': 'neg',
    'correction': 'holm',
    'n_simulations': 250,
    'seed': 20240601,
    'alpha': 0.05,
}

DEFAULT_COLUMNS = {
    'animal': 'Animal',
    'image': 'Image',
    'genotype': 'Genotype',
}


def _load_config(config_path):
    """Load YAML config file and fill in default options."""
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)

    config = copy.deepcopy(config) if config else {}
    options = dict(DEFAULT_OPTIONS)
    options.update(config.get('options') or {})
    config['options'] = options

    columns = dict(DEFAULT_COLUMNS)
    columns.update(config.get('columns') or {})
    config['columns'] = columns

    config.setdefault('analyses', [])
    config.setdefault('data_paths', {})
    config['data_paths'].setdefault('output_dir', 'results')
    return config


def _create_output_dirs(base_dir):
    """Create organized output directory structure."""
    dirs = {
        'base': base_dir,
        'figures': f"{base_dir}/figures",
        'viz': f"{base_dir}/figures/viz",
        'tables': f"{base_dir}/tables"
    }

    for dir_path in dirs.values():
        os.makedirs(dir_path, exist_ok=True)

    return dirs


def _header(title):
    print("\n" + "="*80)
    print(title)
    print("="*80)


def _save_table(df, output_dirs, filename, index=False):
    """Write a result table to the tables directory and report it."""
    path = os.path.join(output_dirs['tables'], filename)
    df.to_csv(path, index=index)
    print(f"  > Saved: {filename}")
    return path


def save_data(data, filename=None):
    """
    Save analysis data to pickle file for sequential workflow.

    Parameters
    ----------
    data : dict
        Analysis data dictionary (output from any ``*_on`` stage).
    filename : str, optional
        Custom filename. If None, uses default based on output_dir in config.

    Returns
    -------
    str
        Path where data was saved.
    """
    if filename is None:
        output_dir = data['config']['data_paths']['output_dir']
        filename = os.path.join(output_dir, 'data_checkpoint.pkl')

    with open(filename, 'wb') as f:
        pickle.dump(data, f)

    size_mb = os.path.getsize(filename) / (1024 * 1024)

    print(f"\n> Data saved: {filename} ({size_mb:.1f} MB)")
    print(f"  Reload with: ldhon.load_data('{filename}')")

    return filename


def load_data(filepath):
    """
    Load analysis data from pickle file.

    Parameters
    ----------
    filepath : str
        Path to saved pickle file.

    Returns
    -------
    dict
        Analysis data dictionary.

    Example
    -------
    >>> from ldhon import load_data
    >>> data = load_data('results/data_after_OL_LDHA.pkl')
    >>> viz_on(data)
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"Data file not found: {filepath}")

    _header("LOADING DATA")

    with open(filepath, 'rb') as f:
        data = pickle.load(f)

    size_mb = os.path.getsize(filepath) / (1024 * 1024)

    print(f"Location: {filepath}")
    print(f"Size: {size_mb:.1f} MB")

    if 'metadata' in data:
        print(f"\nData contains:")
        print(f"  Analysis: {data['metadata'].get('analysis')}")
        print(f"  Rows: {data['metadata'].get('n_rows')}")
        print(f"  Animals: {data['metadata'].get('n_animals')}")

    print("="*80 + "\n")

    return data
