"""
Exceptions raised by the LDH optic-nerve pipeline.

LoadError and ShapeError abort only the analysis that raised them;
ModelFitError carries the convergence diagnostics of the failed fit.
"""


class LDHError(Exception):
    """Base class for all pipeline errors."""


class LoadError(LDHError):
    """A workbook, sheet or required column could not be found."""


class GenotypeMismatchError(LoadError):
    """An animal carries more than one genotype label."""

    def __init__(self, mismatches):
        self.mismatches = mismatches
        details = ', '.join(f"{animal}: {sorted(labels)}" for animal, labels in mismatches.items())
        super().__init__(f"Genotype varies within animal(s): {details}")


class ShapeError(LDHError):
    """A table has none of the columns needed to derive the analysis metrics."""


class ModelFitError(LDHError):
    """The statistics engine did not converge."""

    def __init__(self, message, diagnostics=None):
        self.diagnostics = diagnostics or {}
        if self.diagnostics:
            lines = [f"  {key}: {value}" for key, value in self.diagnostics.items()]
            message = message + "\n" + "\n".join(lines)
        super().__init__(message)
