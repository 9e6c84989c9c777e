"""
LDH Optic-Nerve Analysis Pipeline
=================================

Quantification of LDHA/LDHB immunogold staining and RNAscope transcript
counts in mouse optic nerve, comparing control (ctr) and LDHA/LDHB
conditional-knockout (mut) animals with mixed-effects models.

Main Functions
--------------
prep_on()    - Load a quantification sheet and check genotypes
shape_on()   - Reshape to long format, derive densities and g-ratios
agg_on()     - Average per image, animal and genotype
stat_on()    - Fit the model, ANOVA, marginal means and contrasts
diag_on()    - Simulated-residual dispersion and uniformity tests
viz_on()     - Data and model-fit plots
run_on()     - Run every analysis listed in a config file
save_data()  - Save analysis data for later
load_data()  - Load saved analysis data

Example Workflow
----------------
>>> from ldhon import run_on
>>> out = run_on('config/experiment.yaml')

or stage by stage:

>>> from ldhon import prep_on, shape_on, agg_on, stat_on, diag_on, viz_on
>>> from ldhon.analysis import resolve_analysis
>>> from ldhon.utils import _load_config
>>>
>>> config = _load_config('config/experiment.yaml')
>>> analysis = resolve_analysis(config['analyses'][0], config['columns'])
>>> data = agg_on(shape_on(prep_on(config, analysis)))
>>> data = diag_on(stat_on(data))
>>> viz_on(data)
"""

from .prep import prep_on
from .shaping import shape_on
from .aggregation import agg_on
from .statistics import stat_on, marginal_means, pairwise_contrasts
from .models import fit_model, predict, anova_table, coef_table
from .diagnostics import diag_on
from .visualization import viz_on
from .analysis import run_on, run_analysis
from .utils import save_data, load_data
from .errors import LDHError, LoadError, GenotypeMismatchError, ShapeError, ModelFitError


__version__ = "0.1.0"

__all__ = [
    'prep_on',
    'shape_on',
    'agg_on',
    'stat_on',
    'diag_on',
    'viz_on',
    'run_on',
    'run_analysis',
    'fit_model',
    'predict',
    'anova_table',
    'coef_table',
    'marginal_means',
    'pairwise_contrasts',
    'save_data',
    'load_data',
    'LDHError',
    'LoadError',
    'GenotypeMismatchError',
    'ShapeError',
    'ModelFitError',
]
