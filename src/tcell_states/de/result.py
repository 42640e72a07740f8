"""
Result dataclasses for differential expression analysis with provenance.

These capture what is needed to reproduce and interpret a comparison: the
dataset, the design column and its two levels, the sample identifiers on
each side, the fitted variance prior and the thresholds applied.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd


@dataclass
class GeneResult:
    """
    Result for a single gene.

    Captures the moderated test results and the group means.
    """

    gene_symbol: str
    log2_fold_change: float
    average_expression: float
    mean_test: float
    mean_control: float
    t_statistic: float
    pvalue: float
    pvalue_adjusted: float  # Benjamini-Hochberg
    test_method: str
    direction: str  # "up" | "down" | "unchanged"

    @property
    def effect_size(self) -> float:
        """Absolute effect size (|log2FC|)."""
        return abs(self.log2_fold_change)

    def to_dict(self) -> dict:
        return {
            "gene_symbol": self.gene_symbol,
            "log2_fold_change": self.log2_fold_change,
            "average_expression": self.average_expression,
            "mean_test": self.mean_test,
            "mean_control": self.mean_control,
            "t_statistic": self.t_statistic,
            "pvalue": self.pvalue,
            "pvalue_adjusted": self.pvalue_adjusted,
            "direction": self.direction,
        }

    def __repr__(self) -> str:
        return (
            f"GeneResult({self.gene_symbol}, log2FC={self.log2_fold_change:.2f}, "
            f"p_adj={self.pvalue_adjusted:.2e}, {self.direction})"
        )


@dataclass
class DEProvenance:
    """
    Provenance record for one two-group comparison.
    """

    timestamp: str
    accession: str
    platforms: List[str]

    # Design
    design_column: str
    reference_level: str
    test_level: str

    # Sample identifiers (for reproducibility)
    n_test_samples: int
    n_control_samples: int
    test_sample_ids: List[str]
    control_sample_ids: List[str]

    # Methods
    normalization_method: str
    test_method: str
    fdr_method: str
    thresholds: Dict[str, float]

    # Fitted empirical-Bayes prior
    prior: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        accession: str,
        platforms: List[str],
        design_column: str,
        reference_level: str,
        test_level: str,
        test_sample_ids: List[str],
        control_sample_ids: List[str],
        normalization_method: str,
        test_method: str,
        fdr_method: str,
        fdr_threshold: float,
        log2fc_threshold: float,
    ) -> "DEProvenance":
        """Create a provenance record with current timestamp."""
        return cls(
            timestamp=datetime.now().isoformat(),
            accession=accession,
            platforms=list(platforms),
            design_column=design_column,
            reference_level=reference_level,
            test_level=test_level,
            n_test_samples=len(test_sample_ids),
            n_control_samples=len(control_sample_ids),
            test_sample_ids=list(test_sample_ids),
            control_sample_ids=list(control_sample_ids),
            normalization_method=normalization_method,
            test_method=test_method,
            fdr_method=fdr_method,
            thresholds={
                "fdr": fdr_threshold,
                "log2fc": log2fc_threshold,
            },
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp,
            "dataset": {
                "accession": self.accession,
                "platforms": self.platforms,
            },
            "design": {
                "column": self.design_column,
                "reference": self.reference_level,
                "test": self.test_level,
            },
            "samples": {
                "n_test": self.n_test_samples,
                "n_control": self.n_control_samples,
                "test_ids": self.test_sample_ids,
                "control_ids": self.control_sample_ids,
            },
            "methods": {
                "normalization": self.normalization_method,
                "test": self.test_method,
                "fdr": self.fdr_method,
            },
            "thresholds": self.thresholds,
            # Non-finite values (df = inf) as strings
            "prior": {k: v if math.isfinite(v) else str(v) for k, v in self.prior.items()},
        }


@dataclass
class DEResult:
    """
    Complete differential expression result.

    ``all_genes`` holds every tested gene, most significant first.
    ``upregulated`` and ``downregulated`` hold the genes passing both
    thresholds, ordered by fold change.
    """

    provenance: DEProvenance
    genes_tested: int
    genes_significant: int
    upregulated: List[GeneResult]
    downregulated: List[GeneResult]
    all_genes: List[GeneResult] = field(default_factory=list)

    @property
    def n_upregulated(self) -> int:
        return len(self.upregulated)

    @property
    def n_downregulated(self) -> int:
        return len(self.downregulated)

    def get_gene(self, symbol: str) -> Optional[GeneResult]:
        """Get result for a specific gene."""
        for gene in self.all_genes:
            if gene.gene_symbol == symbol:
                return gene
        return None

    def get_top_genes(self, n: int = 10, direction: str = "both") -> List[GeneResult]:
        """
        Get top N significant genes by absolute log2 fold change.

        Args:
            n: Number of genes to return
            direction: "up", "down", or "both"
        """
        if direction == "up":
            genes = self.upregulated
        elif direction == "down":
            genes = self.downregulated
        else:
            genes = self.upregulated + self.downregulated

        return sorted(genes, key=lambda g: g.effect_size, reverse=True)[:n]

    def to_frame(self) -> pd.DataFrame:
        """All tested genes as a table indexed by gene symbol, in significance order."""
        columns = list(GeneResult.__dataclass_fields__)
        frame = pd.DataFrame([g.__dict__ for g in self.all_genes], columns=columns)
        return frame.drop(columns="test_method").set_index("gene_symbol")

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "provenance": self.provenance.to_dict(),
            "summary": {
                "genes_tested": self.genes_tested,
                "genes_significant": self.genes_significant,
                "n_upregulated": self.n_upregulated,
                "n_downregulated": self.n_downregulated,
            },
            "upregulated": [g.to_dict() for g in self.upregulated],
            "downregulated": [g.to_dict() for g in self.downregulated],
        }

    def __repr__(self) -> str:
        return (
            f"DEResult(genes_tested={self.genes_tested}, "
            f"significant={self.genes_significant}, "
            f"up={self.n_upregulated}, down={self.n_downregulated})"
        )
