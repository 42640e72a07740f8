"""Microarray preprocessing: raw signal loading, RMA and probe annotation."""

from tcell_states.microarray.annotation import (
    collapse_by_max,
    collapse_duplicates,
    load_annotation_table,
    map_probes_to_genes,
    resolve_gene_symbols,
)
from tcell_states.microarray.raw import (
    RawIntensityMatrix,
    load_cel_batch,
    load_intensity_tables,
    read_cdf_layout,
    read_layout_table,
)
from tcell_states.microarray.rma import rma

__all__ = [
    "RawIntensityMatrix",
    "collapse_by_max",
    "collapse_duplicates",
    "load_annotation_table",
    "load_cel_batch",
    "load_intensity_tables",
    "map_probes_to_genes",
    "read_cdf_layout",
    "read_layout_table",
    "resolve_gene_symbols",
    "rma",
]
