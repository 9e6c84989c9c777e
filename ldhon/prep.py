"""
Data loading functions for the LDH optic-nerve pipeline.

Reads quantification sheets from the EM and RNAscope workbooks,
parses numeric columns and checks that genotype is constant within
each animal.
"""

import os

import numpy as np
import pandas as pd

from .errors import GenotypeMismatchError, LoadError
from .utils import _create_output_dirs, _header

GENOTYPE_ALIASES = {
    'wt': 'ctr',
    'control': 'ctr',
    'ko': 'mut',
    'cko': 'mut',
}


def read_sheet(path, sheet, required_columns=(), numeric_columns=()):
    """
    Read one quantification sheet into a DataFrame.

    Blank cells stay NaN. Numeric columns are parsed to float; cells that
    hold text which cannot be parsed also become NaN and are reported.

    Parameters
    ----------
    path : str
        Path to the .xlsx workbook.
    sheet : str
        Sheet name, e.g. 'OL - LDHA'.
    required_columns : sequence of str
        Columns that must be present in the header row.
    numeric_columns : sequence of str
        Columns to parse as floating point (absent ones are ignored).

    Returns
    -------
    pd.DataFrame

    Raises
    ------
    LoadError
        If the file, the sheet or a required column is missing.
    """
    if not path or not os.path.exists(path):
        raise LoadError(f"Workbook not found: {path}")

    with pd.ExcelFile(path) as workbook:
        if sheet not in workbook.sheet_names:
            raise LoadError(
                f"Sheet '{sheet}' not found in {os.path.basename(path)} "
                f"(available: {', '.join(workbook.sheet_names)})"
            )
        df = workbook.parse(sheet)

    df.columns = [str(c).strip() for c in df.columns]
    df = df.dropna(how='all')

    missing = [c for c in required_columns if c not in df.columns]
    if missing:
        raise LoadError(f"Sheet '{sheet}' is missing required column(s): {', '.join(missing)}")

    for col in numeric_columns:
        if col not in df.columns:
            continue
        raw = df[col]
        parsed = pd.to_numeric(raw, errors='coerce').astype(float)
        unparsable = (parsed.isna() & raw.notna()).sum()
        if unparsable:
            print(f"  Warning: {unparsable} non-numeric value(s) in '{col}' treated as missing")
        df[col] = parsed

    return df.reset_index(drop=True)


def normalize_genotype(label):
    """Map a raw genotype label to 'ctr' / 'mut'."""
    if pd.isna(label):
        return label
    text = str(label).strip().lower()
    return GENOTYPE_ALIASES.get(text, text)


def check_genotypes(df, animal_col='Animal', genotype_col='Genotype'):
    """
    Verify that every animal carries exactly one genotype label.

    Raises
    ------
    GenotypeMismatchError
        Listing each animal with more than one label.
    """
    labels = df.dropna(subset=[genotype_col]).groupby(animal_col)[genotype_col].unique()
    mismatches = {animal: set(values) for animal, values in labels.items() if len(values) > 1}
    if mismatches:
        raise GenotypeMismatchError(mismatches)

    unlabeled = df.loc[df[genotype_col].isna(), animal_col].unique()
    if len(unlabeled):
        raise LoadError(f"Missing genotype for animal(s): {', '.join(map(str, unlabeled))}")


def prep_on(config, analysis):
    """
    Load the sheet for one analysis and prepare the stage dictionary.

    Parameters
    ----------
    config : dict
        Loaded configuration (see ``utils._load_config``).
    analysis : dict
        Resolved analysis entry with 'name', 'kind', 'workbook', 'sheet',
        'required_columns' and 'numeric_columns'.

    Returns
    -------
    dict
        Dictionary containing:
        - 'df': the raw sheet with typed columns
        - 'config': the configuration
        - 'analysis': the analysis entry
        - 'metadata': row / image / animal counts per genotype
        - 'output_dirs': paths to output directories

    Example
    -------
    >>> config = _load_config('config/experiment.yaml')
    >>> data = prep_on(config, resolve_analysis(config['analyses'][0], config['columns']))
    """
    _header(f"LOADING: {analysis['name']}")

    columns = config['columns']
    animal_col = columns['animal']
    image_col = columns['image']
    genotype_col = columns['genotype']

    workbook_key = analysis['workbook']
    path = config['data_paths'].get(workbook_key)
    if path is None:
        raise LoadError(f"No path configured for workbook '{workbook_key}'")

    print(f"\n[1/2] Reading '{analysis['sheet']}' from {os.path.basename(path)}...")

    required = [animal_col, image_col, genotype_col] + list(analysis.get('required_columns', []))
    df = read_sheet(path, analysis['sheet'], required_columns=required,
                    numeric_columns=analysis.get('numeric_columns', []))

    for col in (animal_col, image_col):
        present = df[col].notna()
        df[col] = df[col].where(~present, df[col].astype(str).str.strip()).replace('', np.nan)
    df[genotype_col] = df[genotype_col].map(normalize_genotype)

    print(f"  > Loaded {len(df)} rows, {df.shape[1]} columns")

    unidentified = df[animal_col].isna() | df[image_col].isna()
    drops = {'missing_animal_or_image': int(unidentified.sum())}
    if unidentified.any():
        print(f"  Warning: {unidentified.sum()} row(s) without {animal_col} or {image_col} removed")
        df = df[~unidentified].reset_index(drop=True)

    print(f"\n[2/2] Checking genotype consistency...")
    check_genotypes(df, animal_col, genotype_col)

    per_genotype = df.groupby(genotype_col).agg(
        n_animals=(animal_col, 'nunique'),
        n_images=(image_col, 'nunique'),
        n_rows=(animal_col, 'size'),
    )
    for genotype, row in per_genotype.iterrows():
        print(f"  {genotype}: {row['n_animals']} animals, {row['n_images']} images, {row['n_rows']} rows")

    output_dirs = _create_output_dirs(config['data_paths']['output_dir'])

    metadata = {
        'analysis': analysis['name'],
        'kind': analysis['kind'],
        'sheet': analysis['sheet'],
        'n_rows': len(df),
        'n_animals': df[animal_col].nunique(),
        'n_images': df[[animal_col, image_col]].drop_duplicates().shape[0],
        'per_genotype': per_genotype.to_dict(orient='index'),
    }

    return {
        'df': df,
        'config': config,
        'analysis': analysis,
        'metadata': metadata,
        'output_dirs': output_dirs,
        'drops': drops,
    }
