#!/usr/bin/env python3
"""
Chapter 1: Sample metadata and array quality

Fetches a GEO series, tidies the sample table, lists titles that break the
naming grammar, then loads the raw arrays and compares intensity
distributions before and after RMA. Ends with a PCA map of the samples.

Usage:
    python 01_metadata_and_qc.py GSE_ACCESSION [config.json]

Settings not in the config file come from TCELL_STATES_* environment
variables (CACHE_DIR, OUTPUT_DIR, ANNOTATION_URL, LAYOUT_PATH).
"""

import logging
import sys

from tcell_states import load_config
from tcell_states.geo import GEOFetcher, TitleGrammar, create_session, malformed_titles, tidy_metadata
from tcell_states.microarray import collapse_by_max, load_annotation_table, resolve_gene_symbols, rma
from tcell_states.microarray.rma import log2_intensities
from tcell_states.pipeline import load_raw, raw_files_by_sample
from tcell_states.report import PlotlyVisualizer


def section(title: str) -> None:
    print()
    print("-" * 70)
    print(title)
    print("-" * 70)


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    logging.basicConfig(level=logging.INFO)

    config = load_config(sys.argv[2] if len(sys.argv) > 2 else None, accession=sys.argv[1])
    figures_dir = config.output_dir / config.accession / "chapter1"
    viz = PlotlyVisualizer()

    print("=" * 70)
    print(f"CHAPTER 1: Metadata and quality control for {config.accession}")
    print("=" * 70)

    section("STEP 1: Fetch")
    fetcher = GEOFetcher(config.cache_dir, session=create_session(timeout=config.http_timeout))
    dataset = fetcher.fetch(config.accession)
    print(f"  {len(dataset.phenotype)} samples on {', '.join(dataset.platforms)}")
    print(f"  {len(dataset.raw_files)} raw files in {dataset.raw_dir}")

    section("STEP 2: Tidy sample metadata")
    grammar = TitleGrammar(config.title_delimiters, config.title_fields)
    samples = tidy_metadata(dataset.phenotype, grammar)
    print(samples[["accession", "title", *grammar.fields]].to_string(index=False))

    malformed = malformed_titles(samples, grammar)
    print()
    if malformed.empty:
        print(f"  All titles split into {len(grammar.fields)} fields.")
    else:
        print(f"  {len(malformed)} titles do not follow the grammar; their fields are unreliable:")
        for accession, title in malformed.itertuples(index=False):
            print(f"    {accession}: {title}")

    for column in ("condition", "treatment", "time"):
        if column in samples.columns:
            counts = samples[column].value_counts(dropna=False)
            print(f"\n  {column}:")
            for level, n in counts.items():
                print(f"    {level}: {n}")

    section("STEP 3: Raw intensities and RMA")
    raw = load_raw(raw_files_by_sample(dataset, samples), config.layout_path)
    normalized = rma(raw, config.background_correct, config.quantile_normalize)
    print(f"  {raw.shape[0]:,} probes -> {len(normalized):,} probe sets on {raw.shape[1]} arrays")

    fig = viz.intensity_boxplots(log2_intensities(raw), normalized)
    viz.save_html(fig, figures_dir / "intensity_boxplots.html")

    section("STEP 4: Gene-level table and sample PCA")
    annotation = load_annotation_table(
        fetcher.annotation_path(dataset, url=config.annotation_url, platform=config.platform)
    )
    genes = collapse_by_max(normalized, resolve_gene_symbols(annotation))
    print(f"  {len(genes):,} genes")

    for column in ("treatment", "condition"):
        if column in samples.columns:
            fig = viz.pca(genes, samples, color_by=column)
            viz.save_html(fig, figures_dir / f"pca_{column}.html")

    print()
    print(f"Figures written to {figures_dir}")


if __name__ == "__main__":
    main()
