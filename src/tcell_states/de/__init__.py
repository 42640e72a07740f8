"""Two-group differential expression with moderated t statistics."""

from tcell_states.de.analysis import DEConfig, DifferentialExpressionAnalyzer
from tcell_states.de.limma import (
    LinearModelFit,
    design_matrix,
    e_bayes,
    lm_fit,
    squeeze_var,
    top_table,
)
from tcell_states.de.result import DEProvenance, DEResult, GeneResult

__all__ = [
    "DEConfig",
    "DEProvenance",
    "DEResult",
    "DifferentialExpressionAnalyzer",
    "GeneResult",
    "LinearModelFit",
    "design_matrix",
    "e_bayes",
    "lm_fit",
    "squeeze_var",
    "top_table",
]
