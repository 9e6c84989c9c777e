"""
Reshaping functions for the LDH optic-nerve pipeline.

Turns wide per-structure measurement columns into long (Type, Area, Gold)
rows, derives densities, diameters and g-ratios, and drops or flags rows
that cannot enter a model. Every drop is counted.
"""

import copy
import os

import numpy as np
import pandas as pd

from .errors import ShapeError
from .utils import _header

# source column -> (structure type, field)
COLUMN_MAP = {
    'AxonArea': ('Axon', 'Area'),
    'AxonGold': ('Axon', 'Gold'),
    'MyelinArea': ('Myelin', 'Area'),
    'MyelinGold': ('Myelin', 'Gold'),
    'AstrocyteArea': ('Astrocyte', 'Area'),
    'AstrocyteGold': ('Astrocyte', 'Gold'),
    'OligoArea': ('Oligo', 'Area'),
    'OligoGold': ('Oligo', 'Gold'),
}


def _columns_by_type(column_map):
    """Invert the column map into {Type: {field: source_column}} in map order."""
    by_type = {}
    for column, (structure, field) in column_map.items():
        by_type.setdefault(structure, {})[field] = column
    return by_type


def pivot_structures(df, id_cols, column_map=COLUMN_MAP):
    """
    Convert wide structure columns into long rows.

    Parameters
    ----------
    df : pd.DataFrame
        Sheet with columns such as AxonArea, AxonGold, OligoArea, ...
    id_cols : list of str
        Columns carried onto every long row (Animal, Image, Genotype, ...).
    column_map : dict
        {source column: (Type, 'Area' | 'Gold')}.

    Returns
    -------
    (pd.DataFrame, int)
        Long table with columns id_cols + ['Type', 'Area', 'Gold'] and the
        number of rows dropped because Area or Gold was missing.

    Raises
    ------
    ShapeError
        If no structure has both its Area and Gold column in ``df``.
    """
    pieces = []
    for structure, fields in _columns_by_type(column_map).items():
        area_col = fields.get('Area')
        gold_col = fields.get('Gold')
        present = [c for c in (area_col, gold_col) if c in df.columns]
        if len(present) == 1:
            print(f"  Warning: only '{present[0]}' present for {structure}, skipping structure")
        if len(present) != 2:
            continue

        piece = df[list(id_cols) + [area_col, gold_col]].rename(
            columns={area_col: 'Area', gold_col: 'Gold'}
        )
        piece.insert(len(id_cols), 'Type', structure)
        pieces.append(piece)

    if not pieces:
        raise ShapeError(
            f"No Area/Gold column pairs found (expected any of: {', '.join(column_map)})"
        )

    long_df = pd.concat(pieces, ignore_index=True)
    before = len(long_df)
    long_df = long_df.dropna(subset=['Area', 'Gold']).reset_index(drop=True)
    return long_df, before - len(long_df)


def add_density(long_df):
    """
    Add Density = Gold / Area.

    Rows with Area <= 0 or a negative Gold count cannot yield a density
    and are dropped.

    Returns
    -------
    (pd.DataFrame, int)
        Table with a 'Density' column and the number of dropped rows.
    """
    valid = (long_df['Area'] > 0) & (long_df['Gold'] >= 0)
    out = long_df[valid].copy()
    out['Density'] = out['Gold'] / out['Area']
    return out.reset_index(drop=True), int((~valid).sum())


def _circle_diameter(area):
    area = area.where(area >= 0)
    return np.sqrt(area / np.pi) * 2


def add_fiber_metrics(df):
    """
    Derive AxonDiameter, FiberDiameter, gRatio and MyelinArea.

    Diameters are circle-equivalent: 2 * sqrt(A / pi). A metric whose
    inputs are missing stays NaN. An existing MyelinArea column is kept.
    """
    if 'AxonArea' not in df.columns:
        raise ShapeError("Cannot derive fiber metrics without an 'AxonArea' column")

    out = df.copy()
    out['AxonDiameter'] = _circle_diameter(out['AxonArea'])

    if 'FiberArea' in out.columns:
        out['FiberDiameter'] = _circle_diameter(out['FiberArea'])
        fiber = out['FiberDiameter'].where(out['FiberDiameter'] > 0)
        out['gRatio'] = out['AxonDiameter'] / fiber
        if 'MyelinArea' not in out.columns:
            out['MyelinArea'] = out['FiberArea'] - out['AxonArea']

    return out


def filter_gratio(df, image_col='Image', negative_marker='neg'):
    """
    Select rows usable for g-ratio modelling.

    Excludes negative-control images (marker matched case-insensitively in
    the image name) and rows with zero or missing FiberDiameter. Rows whose
    gRatio is outside (0, 1) are flagged and returned separately.

    Returns
    -------
    (pd.DataFrame, pd.DataFrame, dict)
        Kept rows, flagged rows and drop counts per step.
    """
    if 'gRatio' not in df.columns:
        raise ShapeError("Cannot filter g-ratios without 'AxonArea' and 'FiberArea' columns")

    drops = {}

    is_negative = df[image_col].astype(str).str.contains(negative_marker, case=False, regex=False)
    drops['negative_control'] = int(is_negative.sum())
    df = df[~is_negative]

    has_fiber = df['FiberDiameter'].notna() & (df['FiberDiameter'] > 0)
    drops['missing_fiber_diameter'] = int((~has_fiber).sum())
    df = df[has_fiber].copy()

    missing_axon = df['gRatio'].isna()
    drops['missing_axon_diameter'] = int(missing_axon.sum())
    df = df[~missing_axon].copy()

    df['gRatio_flag'] = (df['gRatio'] <= 0) | (df['gRatio'] >= 1)
    flagged = df[df['gRatio_flag']].reset_index(drop=True)
    drops['gratio_out_of_range'] = len(flagged)

    kept = df[~df['gRatio_flag']].reset_index(drop=True)
    return kept, flagged, drops


def _shape_counts(long_df, metric_col):
    """Drop rows with a missing count or a negative count."""
    before = len(long_df)
    long_df = long_df.dropna(subset=[metric_col])
    missing = before - len(long_df)
    negative = long_df[metric_col] < 0
    return long_df[~negative].reset_index(drop=True), {
        'missing_count': missing,
        'negative_count': int(negative.sum()),
    }


def shape_on(data):
    """
    Reshape the loaded sheet into the modelling table for its analysis kind.

    Kinds:
    - 'staining': long (Type, Area, Gold) rows with Density
    - 'axon_staining': fiber metrics plus long rows with Density, restricted
      to the analysis' types (Axon by default)
    - 'gratio': fiber metrics, negative controls and invalid g-ratios removed
    - 'rnascope': one row per cell with a transcript count

    Parameters
    ----------
    data : dict
        Output from prep_on().

    Returns
    -------
    dict
        Updated data dictionary with:
        - 'long_df': tidy table used for aggregation and modelling
        - 'metrics': metric columns to aggregate
        - 'by': extra grouping keys below Genotype (e.g. ['Type'])
        - 'flagged': rows flagged and excluded (g-ratio only)
        - 'drops': drop count per step
    """
    analysis = data['analysis']
    config = data['config']
    columns = config['columns']
    kind = analysis['kind']

    _header(f"SHAPING: {analysis['name']} ({kind})")

    df = data['df']
    id_cols = [columns['animal'], columns['image'], columns['genotype']]
    id_cols += [c for c in analysis.get('id_columns', []) if c in df.columns and c not in id_cols]

    drops = dict(data.get('drops', {}))
    flagged = None
    by = []

    if kind in ('staining', 'axon_staining'):
        source = df
        if kind == 'axon_staining':
            print(f"\n[1/3] Deriving axon and fiber diameters...")
            source = add_fiber_metrics(df)
            id_cols = id_cols + [c for c in ('AxonDiameter', 'FiberDiameter', 'gRatio') if c in source.columns]
        else:
            print(f"\n[1/3] Checking structure columns...")

        print(f"\n[2/3] Pivoting structure columns to long format...")
        long_df, n_missing = pivot_structures(source, id_cols)
        drops['missing_area_or_gold'] = n_missing
        print(f"  > {len(long_df)} rows, types: {', '.join(long_df['Type'].unique())}")

        types = analysis.get('types')
        if types:
            long_df = long_df[long_df['Type'].isin(types)].reset_index(drop=True)
            print(f"  > Restricted to {', '.join(types)}: {len(long_df)} rows")

        print(f"\n[3/3] Computing staining density (Gold / Area)...")
        long_df, n_invalid = add_density(long_df)
        drops['invalid_area_or_gold'] = n_invalid
        metrics = ['Area', 'Gold', 'Density']
        if kind == 'staining' or long_df['Type'].nunique() > 1:
            by = ['Type']
        if kind == 'axon_staining':
            metrics = ['AxonDiameter'] + metrics

    elif kind == 'gratio':
        print(f"\n[1/2] Deriving axon and fiber diameters...")
        shaped = add_fiber_metrics(df)

        print(f"\n[2/2] Filtering g-ratio rows...")
        marker = config['options']['negative_control_marker']
        long_df, flagged, gratio_drops = filter_gratio(shaped, columns['image'], marker)
        drops.update(gratio_drops)
        if len(flagged):
            print(f"  Warning: {len(flagged)} row(s) with gRatio outside (0, 1) excluded from the model:")
            for _, row in flagged.iterrows():
                print(f"    {row[columns['animal']]} / {row[columns['image']]}: gRatio = {row['gRatio']:.3f}")
        metrics = [c for c in ('AxonDiameter', 'FiberDiameter', 'gRatio', 'MyelinArea') if c in long_df.columns]

    elif kind == 'rnascope':
        count_col = analysis['count_column']
        if count_col not in df.columns:
            raise ShapeError(f"Count column '{count_col}' not found")
        print(f"\n[1/1] Selecting per-cell transcript counts ({count_col})...")
        long_df = df[id_cols + [count_col]].copy()
        long_df, count_drops = _shape_counts(long_df, count_col)
        drops.update(count_drops)
        metrics = [count_col]

    else:
        raise ShapeError(f"Unknown analysis kind '{kind}'")

    print(f"\n  Rows dropped per step:")
    for step, count in drops.items():
        print(f"    {step}: {count}")
    print(f"  > {len(long_df)} rows retained for analysis")

    if long_df.empty:
        raise ShapeError(f"No rows left after shaping '{analysis['name']}'")

    if config['options']['export_intermediate']:
        path = os.path.join(data['output_dirs']['tables'], f"{analysis['name']}_shaped.csv")
        long_df.to_csv(path, index=False)
        print(f"  > Saved: {os.path.basename(path)}")

    data_updated = copy.copy(data)
    data_updated['long_df'] = long_df
    data_updated['metrics'] = metrics
    data_updated['by'] = by
    data_updated['flagged'] = flagged
    data_updated['drops'] = drops
    return data_updated
