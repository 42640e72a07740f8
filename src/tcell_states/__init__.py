"""T-cell state exploration of public GEO microarray series.

Fetches a GEO series, tidies its sample metadata, preprocesses raw
Affymetrix intensities with RMA, collapses probe sets to genes, and runs a
limma-style moderated t-test between two treatment levels.

Usage::

    from tcell_states import load_config, run_pipeline

    config = load_config(accession="GSE12345", design_column="treatment",
                         reference_level="unstim", test_level="aCD3")
    result = run_pipeline(config)
    print(result.de_result.get_top_genes(10))
"""

from tcell_states.config import AnalysisConfig, load_config
from tcell_states.pipeline import PipelineResult, run_pipeline, write_outputs

__version__ = "0.1.0"

__all__ = [
    "AnalysisConfig",
    "load_config",
    "PipelineResult",
    "run_pipeline",
    "write_outputs",
]
