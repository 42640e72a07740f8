"""
Differential expression analysis engine.

Compares two levels of a sample metadata column on gene-level log2
expression with per-gene linear models and empirical-Bayes moderated t
statistics (see ``tcell_states.de.limma``). P-values are corrected with
Benjamini-Hochberg.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import pandas as pd

from tcell_states.de.limma import design_matrix, e_bayes, lm_fit, top_table
from tcell_states.de.result import DEProvenance, DEResult, GeneResult

logger = logging.getLogger(__name__)

TEST_METHOD = "limma_moderated_t"
FDR_METHOD = "benjamini_hochberg"


def fold_change_direction(log2fc: float) -> str:
    """Label a fold change "up" or "down", or "unchanged" when it is exactly zero."""
    if log2fc > 0:
        return "up"
    if log2fc < 0:
        return "down"
    return "unchanged"


@dataclass
class DEConfig:
    """Configuration for differential expression analysis.

    Attributes:
        fdr_threshold: Maximum adjusted p-value for a significant gene
        log2fc_threshold: Minimum absolute log2 fold change for a
            significant gene
        min_average_expression: Drop genes whose mean log2 expression over
            the compared samples is below this before fitting. None keeps all.
        normalization_method: Recorded in provenance
    """

    fdr_threshold: float = 0.05
    log2fc_threshold: float = 1.0
    min_average_expression: Optional[float] = None
    normalization_method: str = "rma"

    def __post_init__(self):
        if not 0 < self.fdr_threshold <= 1:
            raise ValueError(f"fdr_threshold must be in (0, 1], got {self.fdr_threshold}")
        if self.log2fc_threshold < 0:
            raise ValueError(f"log2fc_threshold must be >= 0, got {self.log2fc_threshold}")


class DifferentialExpressionAnalyzer:
    """
    Runs a two-group comparison on a gene-level expression table.

    Example:
        analyzer = DifferentialExpressionAnalyzer(DEConfig(fdr_threshold=0.1))
        result = analyzer.analyze(
            expression=genes,          # genes x samples, log2
            samples=sample_table,      # indexed by sample accession
            column="treatment",
            reference="unstim",
            test="stim",
        )
        print(f"Found {result.n_upregulated} upregulated genes")
    """

    def __init__(self, config: Optional[DEConfig] = None):
        self.config = config or DEConfig()

    def analyze(
        self,
        expression: pd.DataFrame,
        samples: pd.DataFrame,
        column: str,
        reference: str,
        test: str,
        accession: str = "",
        platforms: Iterable[str] = (),
    ) -> DEResult:
        """
        Compare ``test`` against ``reference``.

        Args:
            expression: Gene-level log2 expression (genes x samples)
            samples: Sample table indexed by sample accession
            column: Metadata column holding the group labels
            reference: Baseline level
            test: Level compared against the baseline
            accession: Dataset accession, for provenance
            platforms: Platform accessions, for provenance

        Returns:
            DEResult with every tested gene and the significant up and down
            regulated genes
        """
        in_table = samples.index.isin(expression.columns)
        if not in_table.all():
            logger.warning(
                "%d samples have no expression column and are left out",
                int((~in_table).sum()),
            )
        design = design_matrix(samples.loc[in_table], column, reference, test)
        indicator = design.columns[-1]
        test_ids = design.index[design[indicator] == 1].tolist()
        control_ids = design.index[design[indicator] == 0].tolist()

        data = expression[list(design.index)]
        data = self._filter_low_expression(data)
        logger.info(
            "Comparing %s vs %s on %s: %d vs %d samples, %d genes",
            test, reference, column, len(test_ids), len(control_ids), len(data),
        )

        fit = e_bayes(lm_fit(data, design))
        table = top_table(fit, indicator)

        provenance = DEProvenance.create(
            accession=accession,
            platforms=list(platforms),
            design_column=column,
            reference_level=str(reference),
            test_level=str(test),
            test_sample_ids=test_ids,
            control_sample_ids=control_ids,
            normalization_method=self.config.normalization_method,
            test_method=TEST_METHOD,
            fdr_method=FDR_METHOD,
            fdr_threshold=self.config.fdr_threshold,
            log2fc_threshold=self.config.log2fc_threshold,
        )
        provenance.prior = {"s2": fit.s2_prior, "df": fit.df_prior}

        return self._build_result(table, data[test_ids], data[control_ids], provenance)

    def _filter_low_expression(self, data: pd.DataFrame) -> pd.DataFrame:
        threshold = self.config.min_average_expression
        if threshold is None:
            return data
        keep = data.mean(axis=1) >= threshold
        logger.info(
            "Expression filter (mean >= %s): kept %d of %d genes",
            threshold, int(keep.sum()), len(data),
        )
        if not keep.any():
            raise ValueError(f"No gene has mean expression >= {threshold}")
        return data.loc[keep]

    def _build_result(
        self,
        table: pd.DataFrame,
        test_expr: pd.DataFrame,
        control_expr: pd.DataFrame,
        provenance: DEProvenance,
    ) -> DEResult:
        mean_test = test_expr.mean(axis=1)
        mean_control = control_expr.mean(axis=1)

        all_genes = []
        upregulated = []
        downregulated = []
        for gene_symbol, row in table.iterrows():
            log2fc = float(row["log2_fold_change"])
            gene = GeneResult(
                gene_symbol=str(gene_symbol),
                log2_fold_change=log2fc,
                average_expression=float(row["average_expression"]),
                mean_test=float(mean_test[gene_symbol]),
                mean_control=float(mean_control[gene_symbol]),
                t_statistic=float(row["t_statistic"]),
                pvalue=float(row["pvalue"]),
                pvalue_adjusted=float(row["pvalue_adjusted"]),
                test_method=TEST_METHOD,
                direction=fold_change_direction(log2fc),
            )
            all_genes.append(gene)

            if (
                gene.pvalue_adjusted < self.config.fdr_threshold
                and abs(log2fc) >= self.config.log2fc_threshold
            ):
                if gene.direction == "up":
                    upregulated.append(gene)
                elif gene.direction == "down":
                    downregulated.append(gene)

        upregulated.sort(key=lambda g: g.log2_fold_change, reverse=True)
        downregulated.sort(key=lambda g: g.log2_fold_change)
        logger.info("DE complete: %d up, %d down", len(upregulated), len(downregulated))

        return DEResult(
            provenance=provenance,
            genes_tested=len(all_genes),
            genes_significant=len(upregulated) + len(downregulated),
            upregulated=upregulated,
            downregulated=downregulated,
            all_genes=all_genes,
        )
