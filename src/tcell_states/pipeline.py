"""
Pipeline orchestrator.

Runs one GEO series end to end: fetch, tidy metadata, load raw signal, RMA,
probe annotation, collapse to genes, differential expression. Every
intermediate table is kept on the returned ``PipelineResult`` so narrative
chapters can inspect any stage. Errors are not caught; a failing step halts
the run.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

import pandas as pd
import requests

from tcell_states.config import AnalysisConfig
from tcell_states.de.analysis import DEConfig, DifferentialExpressionAnalyzer
from tcell_states.de.result import DEResult
from tcell_states.geo.fetcher import GEODataset, GEOFetcher
from tcell_states.geo.http import create_session
from tcell_states.geo.metadata import (
    TitleGrammar,
    assign_sample_ids,
    malformed_titles,
    sample_id_from_path,
    tidy_metadata,
)
from tcell_states.microarray.annotation import (
    annotation_from_platform,
    collapse_by_max,
    load_annotation_table,
    resolve_gene_symbols,
)
from tcell_states.microarray.raw import (
    RawIntensityMatrix,
    is_cel_file,
    load_cel_batch,
    load_intensity_tables,
    read_cdf_layout,
    read_layout_table,
)
from tcell_states.microarray.rma import log2_intensities, rma
from tcell_states.report.plots import PlotlyVisualizer
from tcell_states.report.tables import ReportGenerator

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Every intermediate product of one pipeline run."""

    config: AnalysisConfig
    dataset: GEODataset
    samples: pd.DataFrame
    malformed: pd.DataFrame
    raw: RawIntensityMatrix
    raw_log2: pd.DataFrame
    normalized: pd.DataFrame
    annotation: pd.DataFrame
    probe_to_gene: pd.Series
    gene_expression: pd.DataFrame
    de_result: DEResult
    timings: Dict[str, float] = field(default_factory=dict)

    def get_stats(self) -> Dict[str, int]:
        return {
            "samples": len(self.samples),
            "malformed_titles": len(self.malformed),
            "probes": self.raw.shape[0],
            "probesets": len(self.normalized),
            "annotated_probesets": int(self.normalized.index.isin(self.probe_to_gene.index).sum()),
            "genes": len(self.gene_expression),
            "genes_significant": self.de_result.genes_significant,
        }


class _StepTimer:
    def __init__(self, timings: Dict[str, float], name: str):
        self.timings = timings
        self.name = name

    def __enter__(self):
        logger.info("== %s ==", self.name)
        self.start = time.perf_counter()
        return self

    def __exit__(self, *exc):
        self.timings[self.name] = time.perf_counter() - self.start
        return False


def load_layout(path: Union[str, Path]) -> pd.DataFrame:
    """Read a probe layout from a text CDF or a probeset/x/y table."""
    path = Path(path)
    name = path.name.lower()
    if name.endswith(".cdf") or name.endswith(".cdf.gz"):
        return read_cdf_layout(path)
    return read_layout_table(path)


def raw_files_by_sample(dataset: GEODataset, samples: pd.DataFrame) -> Dict[str, Path]:
    """
    Raw files of the samples in the tidy table, keyed by sample accession.

    A sample with a CEL file uses only its CEL files; companion files such
    as CHP or EXP are ignored.
    """
    by_sample: Dict[str, List[Path]] = {}
    skipped = 0
    for path in dataset.raw_files:
        sample = sample_id_from_path(path)
        if sample is None:
            skipped += 1
        else:
            by_sample.setdefault(sample, []).append(path)
    if skipped:
        logger.warning("Ignoring %d raw files without a GSM accession in the name", skipped)

    selected: List[Path] = []
    for sample, paths in by_sample.items():
        cel = [p for p in paths if is_cel_file(p)]
        if cel and len(cel) < len(paths):
            logger.debug("%s: ignoring %d non-CEL files", sample, len(paths) - len(cel))
        selected.extend(cel or paths)

    mapping = assign_sample_ids(selected)
    files = {s: mapping[s] for s in samples.index if s in mapping}
    missing = [s for s in samples.index if s not in mapping]
    if missing:
        logger.warning("%d samples have no raw file: %s", len(missing), ", ".join(missing))
    if not files:
        raise FileNotFoundError(f"No raw files for any sample in {dataset.raw_dir}")
    return files


def load_raw(files: Mapping[str, Path], layout_path: Optional[Path]) -> RawIntensityMatrix:
    """Load CEL files with a layout, or per-sample intensity tables."""
    cel = [is_cel_file(p) for p in files.values()]
    if all(cel):
        if layout_path is None:
            raise ValueError("CEL files need a probe layout; set layout_path to a text CDF")
        return load_cel_batch(files, load_layout(layout_path))
    if any(cel):
        raise ValueError("Raw files mix CEL files and intensity tables")
    return load_intensity_tables(files)


def load_probe_annotation(
    config: AnalysisConfig,
    dataset: GEODataset,
    fetcher: GEOFetcher,
) -> pd.DataFrame:
    if config.use_platform_table:
        platform = config.platform or (dataset.platforms[0] if len(dataset.platforms) == 1 else None)
        if platform is None:
            raise ValueError(
                f"{dataset.accession} uses platforms {dataset.platforms}; set platform"
            )
        return annotation_from_platform(dataset.gse.gpls[platform])
    path = fetcher.annotation_path(dataset, url=config.annotation_url, platform=config.platform)
    return load_annotation_table(path)


def run_pipeline(
    config: AnalysisConfig,
    session: Optional[requests.Session] = None,
) -> PipelineResult:
    """
    Run every step for ``config.accession``.

    Args:
        config: Analysis configuration; ``reference_level`` and
            ``test_level`` must be set
        session: HTTP session, built from the config when omitted

    Returns:
        PipelineResult with every intermediate table
    """
    if not config.accession:
        raise ValueError("No accession configured")
    if not config.reference_level or not config.test_level:
        raise ValueError("Both reference_level and test_level must be set")

    timings: Dict[str, float] = {}
    session = session or create_session(
        max_retries=config.http_retries, timeout=config.http_timeout
    )
    fetcher = GEOFetcher(config.cache_dir, session=session)

    with _StepTimer(timings, "fetch"):
        dataset = fetcher.fetch(config.accession)

    with _StepTimer(timings, "metadata"):
        grammar = TitleGrammar(config.title_delimiters, config.title_fields)
        samples = tidy_metadata(dataset.phenotype, grammar)
        malformed = malformed_titles(samples, grammar)

    with _StepTimer(timings, "raw"):
        raw = load_raw(raw_files_by_sample(dataset, samples), config.layout_path)
        logger.info("Raw matrix: %d probes x %d samples", *raw.shape)

    with _StepTimer(timings, "rma"):
        normalized = rma(
            raw,
            background=config.background_correct,
            normalize=config.quantile_normalize,
        )
        raw_log2 = log2_intensities(raw)

    with _StepTimer(timings, "annotation"):
        annotation = load_probe_annotation(config, dataset, fetcher)
        probe_to_gene = resolve_gene_symbols(annotation)
        gene_expression = collapse_by_max(normalized, probe_to_gene)

    with _StepTimer(timings, "differential expression"):
        analyzer = DifferentialExpressionAnalyzer(DEConfig(
            fdr_threshold=config.fdr_threshold,
            log2fc_threshold=config.log2fc_threshold,
            min_average_expression=config.min_average_expression,
            normalization_method="rma" if config.background_correct else "quantile_log2",
        ))
        de_result = analyzer.analyze(
            gene_expression,
            samples,
            column=config.design_column,
            reference=config.reference_level,
            test=config.test_level,
            accession=dataset.accession,
            platforms=dataset.platforms,
        )

    return PipelineResult(
        config=config,
        dataset=dataset,
        samples=samples,
        malformed=malformed,
        raw=raw,
        raw_log2=raw_log2,
        normalized=normalized,
        annotation=annotation,
        probe_to_gene=probe_to_gene,
        gene_expression=gene_expression,
        de_result=de_result,
        timings=timings,
    )


def write_outputs(
    result: PipelineResult,
    output_dir: Optional[Union[str, Path]] = None,
) -> Dict[str, Path]:
    """
    Write tables, provenance and figures of a run.

    Args:
        result: Pipeline result
        output_dir: Target directory, defaults to
            ``<config.output_dir>/<accession>``

    Returns:
        Mapping of output name to written path
    """
    output_dir = Path(output_dir or result.config.output_dir / result.dataset.accession)
    figures_dir = output_dir / "figures"
    figures_dir.mkdir(parents=True, exist_ok=True)
    written: Dict[str, Path] = {}

    def table(name: str, frame: pd.DataFrame, **kwargs) -> None:
        path = output_dir / f"{name}.tsv"
        frame.to_csv(path, sep="\t", **kwargs)
        written[name] = path

    table("samples", result.samples, index=False)
    if not result.malformed.empty:
        table("malformed_titles", result.malformed, index=False)
    table("normalized_probesets", result.normalized)
    table("gene_expression", result.gene_expression)

    reporter = ReportGenerator()
    written["de_all_genes"] = output_dir / "de_all_genes.tsv"
    reporter.to_tsv(result.de_result, written["de_all_genes"], include_all=True)
    written["de_significant"] = output_dir / "de_significant.tsv"
    reporter.to_tsv(result.de_result, written["de_significant"])
    written["de_results"] = output_dir / "de_results.json"
    reporter.to_json(result.de_result, written["de_results"])

    run_info = {
        "config": result.config.to_dict(),
        "stats": result.get_stats(),
        "timings_seconds": result.timings,
    }
    written["run"] = output_dir / "run.json"
    with open(written["run"], "w") as f:
        json.dump(run_info, f, indent=2)

    viz = PlotlyVisualizer()
    figures = {
        "intensity_boxplots": viz.intensity_boxplots(result.raw_log2, result.normalized),
        "pca": viz.pca(result.gene_expression, result.samples, result.config.design_column),
        "volcano": viz.volcano(result.de_result),
        "ma_plot": viz.ma_plot(result.de_result),
        "mean_scatter": viz.mean_scatter(result.de_result),
    }
    for name, fig in figures.items():
        written[name] = viz.save_html(fig, figures_dir / f"{name}.html", include_plotlyjs="cdn")

    logger.info("Wrote %d outputs to %s", len(written), output_dir)
    return written
