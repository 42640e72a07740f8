"""
Report generation for differential expression results.

Supports multiple output formats:
- JSON: Full provenance and results for programmatic use
- TSV: Gene tables for spreadsheet analysis
- Console: Human-readable summary
- Markdown: Top-genes table for the narrative chapters
"""

import csv
import json
import math
from io import StringIO
from pathlib import Path
from typing import List, TextIO, Union

from tcell_states.de.result import DEResult, GeneResult

TSV_HEADER = [
    "gene_symbol",
    "log2_fold_change",
    "average_expression",
    "mean_test",
    "mean_control",
    "t_statistic",
    "pvalue",
    "pvalue_adjusted",
    "direction",
    "significant",
]


def _format_p(value: float) -> str:
    return "NA" if value is None or math.isnan(value) else f"{value:.2e}"


class ReportGenerator:
    """
    Generates reports from differential expression results.

    Example:
        generator = ReportGenerator()
        generator.to_json(result, "results/de.json")
        generator.to_tsv(result, "results/de.tsv", include_all=True)
        print(generator.to_console_summary(result))
    """

    def to_json(self, result: DEResult, path: Union[str, Path], indent: int = 2) -> None:
        """Write summary, provenance and significant genes to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(result.to_dict(), f, indent=indent)

    def to_json_string(self, result: DEResult, indent: int = 2) -> str:
        return json.dumps(result.to_dict(), indent=indent)

    def to_tsv(
        self,
        result: DEResult,
        path: Union[str, Path],
        include_all: bool = False,
    ) -> None:
        """
        Write gene results to a TSV file.

        Args:
            result: DE result
            path: Output file path
            include_all: If True, include all tested genes (not just significant)
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", newline="") as f:
            self._write_tsv(result, f, include_all)

    def to_tsv_string(self, result: DEResult, include_all: bool = False) -> str:
        output = StringIO()
        self._write_tsv(result, output, include_all)
        return output.getvalue()

    def _write_tsv(self, result: DEResult, out: TextIO, include_all: bool) -> None:
        significant = {g.gene_symbol for g in result.upregulated + result.downregulated}
        if include_all and result.all_genes:
            genes = result.all_genes
        else:
            genes = result.upregulated + result.downregulated

        writer = csv.writer(out, delimiter="\t", lineterminator="\n")
        writer.writerow(TSV_HEADER)
        for gene in genes:
            writer.writerow([
                gene.gene_symbol,
                f"{gene.log2_fold_change:.4f}",
                f"{gene.average_expression:.4f}",
                f"{gene.mean_test:.4f}",
                f"{gene.mean_control:.4f}",
                f"{gene.t_statistic:.4f}",
                _format_p(gene.pvalue),
                _format_p(gene.pvalue_adjusted),
                gene.direction,
                "yes" if gene.gene_symbol in significant else "no",
            ])

    def to_console_summary(
        self,
        result: DEResult,
        top_n: int = 10,
        show_provenance: bool = True,
    ) -> str:
        """
        Generate human-readable console summary.

        Args:
            result: DE result
            top_n: Number of top genes to show per direction
            show_provenance: Whether to include provenance details

        Returns:
            Formatted string report
        """
        lines = []
        lines.append("=" * 70)
        lines.append("DIFFERENTIAL EXPRESSION ANALYSIS RESULTS")
        lines.append("=" * 70)

        if show_provenance:
            prov = result.provenance
            lines.append("")
            lines.append("DATASET")
            lines.append(f"  Accession: {prov.accession}")
            if prov.platforms:
                lines.append(f"  Platforms: {', '.join(prov.platforms)}")
            lines.append(f"  Timestamp: {prov.timestamp}")
            lines.append("")
            lines.append("DESIGN")
            lines.append(f"  Column: {prov.design_column}")
            lines.append(f"  Test: {prov.test_level} ({prov.n_test_samples} samples)")
            lines.append(f"  Reference: {prov.reference_level} ({prov.n_control_samples} samples)")
            lines.append("")
            lines.append("METHODS")
            lines.append(f"  Normalization: {prov.normalization_method}")
            lines.append(f"  Statistical test: {prov.test_method}")
            lines.append(f"  FDR correction: {prov.fdr_method}")
            if prov.prior:
                lines.append(
                    f"  Variance prior: s2={prov.prior.get('s2', float('nan')):.4g}, "
                    f"df={prov.prior.get('df', float('nan')):.4g}"
                )
            lines.append("")
            lines.append("THRESHOLDS")
            lines.append(f"  FDR: {prov.thresholds.get('fdr', 0.05)}")
            lines.append(f"  Log2 FC: {prov.thresholds.get('log2fc', 1.0)}")

        lines.append("")
        lines.append("-" * 70)
        lines.append("SUMMARY")
        lines.append("-" * 70)
        lines.append(f"  Genes tested: {result.genes_tested:,}")
        lines.append(f"  Genes significant: {result.genes_significant:,}")
        lines.append(f"  Upregulated: {result.n_upregulated:,}")
        lines.append(f"  Downregulated: {result.n_downregulated:,}")

        for label, genes in (("UPREGULATED", result.upregulated), ("DOWNREGULATED", result.downregulated)):
            if not genes:
                continue
            lines.append("")
            lines.append("-" * 70)
            lines.append(f"TOP {min(top_n, len(genes))} {label} GENES")
            lines.append("-" * 70)
            lines.append(f"  {'Gene':<12} {'Log2FC':>10} {'P-adj':>12} {'Mean Test':>12} {'Mean Ctrl':>12}")
            lines.append("  " + "-" * 58)
            for gene in genes[:top_n]:
                lines.append(
                    f"  {gene.gene_symbol:<12} {gene.log2_fold_change:>10.2f} "
                    f"{_format_p(gene.pvalue_adjusted):>12} {gene.mean_test:>12.2f} "
                    f"{gene.mean_control:>12.2f}"
                )

        lines.append("")
        lines.append("=" * 70)
        return "\n".join(lines)

    def to_markdown(self, result: DEResult, top_n: int = 20) -> str:
        """
        Markdown table of the most significant genes, for narrative text.

        Rows follow ``all_genes`` order, so the table lists the most
        significant genes whether or not they pass the fold-change threshold.
        """
        genes: List[GeneResult] = result.all_genes[:top_n]
        lines = [
            "| Gene | log2FC | Mean expr. | t | P-value | Adj. P |",
            "|---|---:|---:|---:|---:|---:|",
        ]
        for gene in genes:
            lines.append(
                f"| {gene.gene_symbol} | {gene.log2_fold_change:.2f} | "
                f"{gene.average_expression:.2f} | {gene.t_statistic:.2f} | "
                f"{_format_p(gene.pvalue)} | {_format_p(gene.pvalue_adjusted)} |"
            )
        return "\n".join(lines)
