"""
Probe-to-gene annotation.

Reads probe annotation flat files, resolves every probe to a single gene
symbol, and collapses probe-level expression to gene level by taking the
per-sample maximum over the probes of each gene.

Supported inputs:
- Affymetrix annotation CSV (``#%`` header lines, ``Probe Set ID``,
  ``Gene Symbol``)
- GEO platform annotation (``GPLxxx.annot.gz``: SOFT header, then a table
  between ``!platform_table_begin`` and ``!platform_table_end``)
- A GEOparse platform object whose table carries a gene symbol column
"""

import gzip
import io
import logging
from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)

# Affymetrix writes this when a probe set has no gene
NO_GENE_PLACEHOLDER = "---"
SYMBOL_DELIMITER = "///"

ANNOTATION_COLUMNS = ["probe_id", "gene_symbols"]

_ID_COLUMNS = ("probe set id", "id", "id_ref", "probeset", "probe_id")
_SYMBOL_COLUMNS = ("gene symbol", "gene_symbol", "symbol")


def _read_text(path: Path) -> str:
    if path.suffix.lower() == ".gz":
        with gzip.open(path, "rt", encoding="utf-8", errors="replace") as fh:
            return fh.read()
    return path.read_text(encoding="utf-8", errors="replace")


def _pick_column(columns, candidates, what: str, source) -> str:
    lowered = {str(c).strip().lower(): c for c in columns}
    for candidate in candidates:
        if candidate in lowered:
            return lowered[candidate]
    for column in columns:
        if "symbol" in str(column).lower() and what == "gene symbol":
            return column
    raise ValueError(f"No {what} column in {source}; columns are {list(columns)}")


def _standardize(table: pd.DataFrame, source) -> pd.DataFrame:
    id_col = _pick_column(table.columns, _ID_COLUMNS, "probe identifier", source)
    symbol_col = _pick_column(table.columns, _SYMBOL_COLUMNS, "gene symbol", source)
    out = table[[id_col, symbol_col]].copy()
    out.columns = ANNOTATION_COLUMNS
    out["probe_id"] = out["probe_id"].astype(str).str.strip()
    return out.drop_duplicates(subset="probe_id").reset_index(drop=True)


def load_annotation_table(path: Union[str, Path]) -> pd.DataFrame:
    """
    Read a probe annotation flat file.

    Returns:
        DataFrame with ``probe_id`` and the raw, possibly ``///``-delimited,
        ``gene_symbols`` of each probe
    """
    path = Path(path)
    text = _read_text(path)
    lines = text.splitlines(keepends=True)

    if any(line.startswith("!platform_table_begin") for line in lines):
        start = next(i for i, l in enumerate(lines) if l.startswith("!platform_table_begin")) + 1
        end = next(
            (i for i, l in enumerate(lines) if l.startswith("!platform_table_end")), len(lines)
        )
        table = pd.read_csv(io.StringIO("".join(lines[start:end])), sep="\t", dtype=str)
    elif path.name.lower().endswith((".csv", ".csv.gz")):
        table = pd.read_csv(io.StringIO(text), comment="#", dtype=str)
    else:
        body = "".join(l for l in lines if not l.startswith(("#", "!", "^")))
        table = pd.read_csv(io.StringIO(body), sep="\t", dtype=str)

    annotation = _standardize(table, path.name)
    logger.info("Read annotation for %d probes from %s", len(annotation), path.name)
    return annotation


def annotation_from_platform(gpl: Any) -> pd.DataFrame:
    """Build the annotation table from a GEOparse GPL object."""
    table = getattr(gpl, "table", None)
    if table is None or table.empty:
        raise ValueError(f"Platform {getattr(gpl, 'name', gpl)} has no annotation table")
    return _standardize(table.astype(str), getattr(gpl, "name", "platform table"))


def first_symbol(value: Any) -> Optional[str]:
    """First symbol of a ``///``-delimited list, or None for no gene."""
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    symbol = str(value).split(SYMBOL_DELIMITER)[0].strip()
    if not symbol or symbol == NO_GENE_PLACEHOLDER or symbol.lower() in ("nan", "none"):
        return None
    return symbol


def resolve_gene_symbols(annotation: pd.DataFrame) -> pd.Series:
    """
    Resolve each probe to one gene symbol.

    Probes with no resolvable symbol are dropped.

    Returns:
        Series indexed by ``probe_id`` with the representative gene symbol
    """
    symbols = annotation.set_index("probe_id")["gene_symbols"].map(first_symbol)
    resolved = symbols.dropna()
    resolved.name = "gene_symbol"
    dropped = len(symbols) - len(resolved)
    if dropped:
        logger.info("Dropped %d of %d probes without a gene symbol", dropped, len(symbols))
    return resolved


def map_probes_to_genes(expression: pd.DataFrame, probe_to_gene: pd.Series) -> pd.DataFrame:
    """
    Attach gene symbols to probe-level expression, dropping unmapped probes.

    The result never has more rows than ``expression``.

    Returns:
        Copy of ``expression`` restricted to mapped probes, with a
        ``gene_symbol`` column inserted first
    """
    if not probe_to_gene.index.is_unique:
        raise ValueError("probe_to_gene must map each probe once")
    mapped = expression.loc[expression.index.isin(probe_to_gene.index)].copy()
    mapped.insert(0, "gene_symbol", probe_to_gene.reindex(mapped.index).to_numpy())
    return mapped


def collapse_by_max(expression: pd.DataFrame, probe_to_gene: pd.Series) -> pd.DataFrame:
    """
    Collapse probe-level expression to gene level.

    Each cell is the maximum, for that sample, over all probes of the gene.

    Returns:
        DataFrame indexed by ``gene_symbol`` (sorted), one column per sample
    """
    mapped = map_probes_to_genes(expression, probe_to_gene)
    symbols = mapped.pop("gene_symbol")
    genes = mapped.groupby(symbols, sort=True).max()
    genes.index.name = "gene_symbol"
    logger.info("Collapsed %d probes to %d genes", len(mapped), len(genes))
    return genes


def collapse_duplicates(gene_expression: pd.DataFrame) -> pd.DataFrame:
    """Collapse rows that share a gene symbol by their per-sample maximum."""
    collapsed = gene_expression.groupby(level=0, sort=True).max()
    collapsed.index.name = gene_expression.index.name or "gene_symbol"
    return collapsed
