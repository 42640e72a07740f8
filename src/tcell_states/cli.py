"""Command line interface for the GEO T-cell state analysis."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import click

from tcell_states.config import load_config
from tcell_states.geo.fetcher import GEOFetcher
from tcell_states.geo.http import create_session
from tcell_states.geo.metadata import TitleGrammar, malformed_titles, tidy_metadata
from tcell_states.pipeline import run_pipeline, write_outputs
from tcell_states.report.tables import ReportGenerator

config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file with analysis settings.",
)
cache_dir_option = click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory holding one subdirectory per GEO series. [default: data]",
)


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def cli(verbose: bool) -> None:
    """Explore T-cell states in public GEO microarray series."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


@cli.command("fetch")
@click.argument("accession")
@config_option
@cache_dir_option
@click.option("--metadata-only", is_flag=True, help="Skip supplementary raw files.")
def fetch_command(
    accession: str,
    config_path: Optional[Path],
    cache_dir: Optional[Path],
    metadata_only: bool,
) -> None:
    """Download a GEO series into the cache (no-op when already cached)."""
    try:
        config = load_config(config_path, accession=accession, cache_dir=cache_dir)
        session = create_session(max_retries=config.http_retries, timeout=config.http_timeout)
        fetcher = GEOFetcher(config.cache_dir, session=session, download_raw=not metadata_only)
        dataset = fetcher.fetch(config.accession)
    except (ValueError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc

    state = "cached" if dataset.from_cache else "downloaded"
    click.echo(
        f"{dataset.accession}: {len(dataset.phenotype)} samples, "
        f"{len(dataset.raw_files)} raw files, platforms {', '.join(dataset.platforms) or 'none'} "
        f"({state} at {dataset.directory})"
    )


@cli.command("samples")
@click.argument("accession")
@config_option
@cache_dir_option
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write the tidy sample table to this TSV instead of printing it.",
)
def samples_command(
    accession: str,
    config_path: Optional[Path],
    cache_dir: Optional[Path],
    output: Optional[Path],
) -> None:
    """Tidy the sample metadata of a series and report malformed titles."""
    try:
        config = load_config(config_path, accession=accession, cache_dir=cache_dir)
        session = create_session(max_retries=config.http_retries, timeout=config.http_timeout)
        fetcher = GEOFetcher(config.cache_dir, session=session, download_raw=False)
        dataset = fetcher.fetch(config.accession)
        grammar = TitleGrammar(config.title_delimiters, config.title_fields)
        samples = tidy_metadata(dataset.phenotype, grammar)
    except (ValueError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc

    columns = ["accession", "title", *grammar.fields]
    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        samples.to_csv(output, sep="\t", index=False)
        click.echo(f"Wrote {len(samples)} samples to {output}")
    else:
        click.echo(samples[columns].to_string(index=False))

    malformed = malformed_titles(samples, grammar)
    if not malformed.empty:
        click.echo(
            f"{len(malformed)} titles do not match {len(grammar.fields)} fields "
            f"separated by {grammar.delimiters!r}:",
            err=True,
        )
        for accession_id, title in malformed.itertuples(index=False):
            click.echo(f"  {accession_id}: {title}", err=True)


@cli.command("run")
@click.argument("accession")
@config_option
@cache_dir_option
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for tables and figures. [default: results/<ACCESSION>]",
)
@click.option("--design-column", help="Sample column holding the compared levels. [default: treatment]")
@click.option("--reference", "reference_level", help="Baseline level of the design column.")
@click.option("--test", "test_level", help="Level compared against the baseline.")
@click.option(
    "--layout",
    "layout_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Text CDF or probeset/x/y table for CEL files.",
)
@click.option("--annotation-url", help="Fixed URL of a probe annotation flat file.")
@click.option("--platform", help="GPL accession whose annotation to use.")
@click.option("--fdr", "fdr_threshold", type=click.FloatRange(0, 1, min_open=True), help="FDR threshold.")
@click.option("--log2fc", "log2fc_threshold", type=click.FloatRange(min=0), help="Minimum |log2FC|.")
@click.option("--top", "top_n", type=click.IntRange(1, 1000), default=10, show_default=True,
              help="Genes listed per direction in the summary.")
def run_command(
    accession: str,
    config_path: Optional[Path],
    cache_dir: Optional[Path],
    output_dir: Optional[Path],
    design_column: Optional[str],
    reference_level: Optional[str],
    test_level: Optional[str],
    layout_path: Optional[Path],
    annotation_url: Optional[str],
    platform: Optional[str],
    fdr_threshold: Optional[float],
    log2fc_threshold: Optional[float],
    top_n: int,
) -> None:
    """Run the full analysis of a series and write tables and figures."""
    try:
        config = load_config(
            config_path,
            accession=accession,
            cache_dir=cache_dir,
            design_column=design_column,
            reference_level=reference_level,
            test_level=test_level,
            layout_path=layout_path,
            annotation_url=annotation_url,
            platform=platform,
            fdr_threshold=fdr_threshold,
            log2fc_threshold=log2fc_threshold,
        )
        result = run_pipeline(config)
        written = write_outputs(result, output_dir)
    except (ValueError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(ReportGenerator().to_console_summary(result.de_result, top_n=top_n))
    if not result.malformed.empty:
        click.echo(f"Warning: {len(result.malformed)} sample titles were malformed", err=True)
    click.echo(f"Wrote {len(written)} files to {written['de_results'].parent}")


def main() -> None:  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
