"""
Interactive Plotly figures for the expression analysis.

Quality control:
- Per-sample intensity distributions, raw versus normalized
- PCA sample map coloured by a metadata column

Differential expression:
- Volcano plot
- MA plot
- Test versus control mean scatter

Usage:
    viz = PlotlyVisualizer()
    fig = viz.volcano(result)
    viz.save_html(fig, "results/volcano.html")
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd
import plotly.graph_objects as go
from plotly.subplots import make_subplots

from tcell_states.de.result import DEResult, GeneResult

logger = logging.getLogger(__name__)

COLORS = {
    # Expression direction
    "up": "#e74c3c",      # Red (up-regulated)
    "down": "#3498db",    # Blue (down-regulated)
    "neutral": "#95a5a6", # Gray

    # Preprocessing stage
    "raw": "#f39c12",
    "normalized": "#2ecc71",
}

# Qualitative palette for metadata groups
GROUP_PALETTE = [
    "#1f77b4", "#ff7f0e", "#2ca02c", "#d62728", "#9467bd",
    "#8c564b", "#e377c2", "#7f7f7f", "#bcbd22", "#17becf",
]


def principal_components(expression: pd.DataFrame, n_components: int = 2):
    """
    PCA of samples from a genes x samples table.

    Genes are centred across samples; constant genes are dropped.

    Returns:
        (scores DataFrame indexed by sample with PC1..PCn, explained variance
        ratio per component)
    """
    data = expression.dropna()
    data = data.loc[data.std(axis=1) > 0]
    if data.shape[1] < 2 or data.empty:
        raise ValueError("PCA needs at least two samples and one variable gene")
    x = (data.T - data.T.mean(axis=0)).to_numpy(dtype=float)
    u, s, _ = np.linalg.svd(x, full_matrices=False)
    k = min(n_components, len(s))
    scores = u[:, :k] * s[:k]
    explained = (s ** 2) / np.sum(s ** 2)
    columns = [f"PC{i + 1}" for i in range(k)]
    return pd.DataFrame(scores, index=data.columns, columns=columns), explained[:k]


class PlotlyVisualizer:
    """Interactive figures for QC and differential expression."""

    def __init__(self, template: str = "plotly_white"):
        """
        Initialize visualizer.

        Args:
            template: Plotly template (plotly_white, plotly_dark, ggplot2, etc.)
        """
        self.template = template

    # =========================================================================
    # Quality control
    # =========================================================================

    def intensity_boxplots(
        self,
        raw_log2: pd.DataFrame,
        normalized: pd.DataFrame,
        title: str = "Per-sample log2 intensity distributions",
        height: int = 700,
        width: int = 1000,
    ) -> go.Figure:
        """
        Box plots of each sample's log2 intensities before and after RMA.

        Boxes are drawn from precomputed quartiles, so probe-level tables with
        millions of rows stay small in the saved HTML.
        """
        if raw_log2.empty or normalized.empty:
            return self._empty_figure("No intensities to display")

        fig = make_subplots(
            rows=2, cols=1, shared_xaxes=True, vertical_spacing=0.08,
            subplot_titles=("Raw (probe level)", "RMA normalized (probe set level)"),
        )
        for row, (frame, stage) in enumerate(((raw_log2, "raw"), (normalized, "normalized")), 1):
            stats = self._box_stats(frame)
            fig.add_trace(
                go.Box(
                    name=stage,
                    x=list(frame.columns),
                    q1=stats["q1"], median=stats["median"], q3=stats["q3"],
                    lowerfence=stats["lower"], upperfence=stats["upper"],
                    marker_color=COLORS[stage],
                    showlegend=False,
                ),
                row=row, col=1,
            )
        fig.update_yaxes(title_text="log2 intensity")
        fig.update_layout(
            title=dict(text=title, x=0.5, font=dict(size=18)),
            template=self.template,
            height=height,
            width=width,
        )
        return fig

    @staticmethod
    def _box_stats(frame: pd.DataFrame) -> Dict[str, List[float]]:
        q = frame.quantile([0.25, 0.5, 0.75])
        iqr = q.loc[0.75] - q.loc[0.25]
        lower = np.maximum(frame.min(), q.loc[0.25] - 1.5 * iqr)
        upper = np.minimum(frame.max(), q.loc[0.75] + 1.5 * iqr)
        return {
            "q1": q.loc[0.25].tolist(),
            "median": q.loc[0.5].tolist(),
            "q3": q.loc[0.75].tolist(),
            "lower": list(lower),
            "upper": list(upper),
        }

    def pca(
        self,
        expression: pd.DataFrame,
        samples: pd.DataFrame,
        color_by: str,
        title: Optional[str] = None,
        height: int = 600,
        width: int = 800,
    ) -> go.Figure:
        """
        PCA sample map, one trace per level of ``color_by``.

        Args:
            expression: genes x samples log2 expression
            samples: Sample table indexed by sample accession
            color_by: Metadata column used for colour
        """
        if color_by not in samples.columns:
            raise ValueError(f"No column {color_by!r} in sample table")
        scores, explained = principal_components(expression)
        groups = samples.reindex(scores.index)[color_by].fillna("NA").astype(str)
        hover = samples.reindex(scores.index).get("title", pd.Series(index=scores.index, dtype=str))

        fig = go.Figure()
        for i, level in enumerate(sorted(groups.unique())):
            members = groups.index[groups == level]
            fig.add_trace(go.Scatter(
                x=scores.loc[members, "PC1"],
                y=scores.loc[members, "PC2"] if "PC2" in scores else np.zeros(len(members)),
                mode="markers",
                name=level,
                marker=dict(size=11, color=GROUP_PALETTE[i % len(GROUP_PALETTE)]),
                text=[f"{s}<br>{hover.get(s, '')}" for s in members],
                hovertemplate="%{text}<extra></extra>",
            ))

        pc2 = f"PC2 ({explained[1]:.0%})" if len(explained) > 1 else "PC2"
        fig.update_layout(
            title=dict(text=title or f"PCA of samples by {color_by}", x=0.5, font=dict(size=18)),
            xaxis_title=f"PC1 ({explained[0]:.0%})",
            yaxis_title=pc2,
            template=self.template,
            height=height,
            width=width,
            legend_title_text=color_by,
        )
        return fig

    # =========================================================================
    # Differential expression
    # =========================================================================

    def volcano(
        self,
        result: DEResult,
        title: Optional[str] = None,
        label_top: int = 10,
        height: int = 650,
        width: int = 850,
    ) -> go.Figure:
        """Volcano plot: log2 fold change against -log10 p-value."""
        if not result.all_genes:
            return self._empty_figure("No genes tested")

        fdr = result.provenance.thresholds.get("fdr", 0.05)
        lfc = result.provenance.thresholds.get("log2fc", 1.0)
        fig = go.Figure()
        for category, genes in self._split_by_category(result).items():
            if not genes:
                continue
            fig.add_trace(go.Scattergl(
                x=[g.log2_fold_change for g in genes],
                y=[-np.log10(max(g.pvalue, 1e-300)) for g in genes],
                mode="markers",
                name=category,
                marker=dict(size=5, color=COLORS[category], opacity=0.7),
                text=[g.gene_symbol for g in genes],
                hovertemplate="<b>%{text}</b><br>log2FC: %{x:.2f}<br>-log10 p: %{y:.2f}<extra></extra>",
            ))

        for gene in result.all_genes[:label_top]:
            fig.add_annotation(
                x=gene.log2_fold_change,
                y=-np.log10(max(gene.pvalue, 1e-300)),
                text=gene.gene_symbol,
                showarrow=False,
                yshift=10,
                font=dict(size=10),
            )

        if lfc > 0:
            fig.add_vline(x=lfc, line_dash="dash", line_color="gray", opacity=0.5)
            fig.add_vline(x=-lfc, line_dash="dash", line_color="gray", opacity=0.5)

        prov = result.provenance
        fig.update_layout(
            title=dict(
                text=title or f"{prov.test_level} vs {prov.reference_level} (FDR < {fdr})",
                x=0.5, font=dict(size=18),
            ),
            xaxis_title="log2 fold change",
            yaxis_title="-log10 p-value",
            template=self.template,
            height=height,
            width=width,
        )
        return fig

    def ma_plot(
        self,
        result: DEResult,
        title: str = "MA plot",
        height: int = 600,
        width: int = 850,
    ) -> go.Figure:
        """Fold change against average expression."""
        if not result.all_genes:
            return self._empty_figure("No genes tested")

        fig = go.Figure()
        for category, genes in self._split_by_category(result).items():
            if not genes:
                continue
            fig.add_trace(go.Scattergl(
                x=[g.average_expression for g in genes],
                y=[g.log2_fold_change for g in genes],
                mode="markers",
                name=category,
                marker=dict(size=5, color=COLORS[category], opacity=0.7),
                text=[g.gene_symbol for g in genes],
                hovertemplate="<b>%{text}</b><br>A: %{x:.2f}<br>M: %{y:.2f}<extra></extra>",
            ))
        fig.add_hline(y=0, line_dash="dash", line_color="gray", opacity=0.5)
        fig.update_layout(
            title=dict(text=title, x=0.5, font=dict(size=18)),
            xaxis_title="Average log2 expression",
            yaxis_title="log2 fold change",
            template=self.template,
            height=height,
            width=width,
        )
        return fig

    def mean_scatter(
        self,
        result: DEResult,
        title: Optional[str] = None,
        height: int = 700,
        width: int = 700,
    ) -> go.Figure:
        """Mean expression in the test group against the reference group."""
        if not result.all_genes:
            return self._empty_figure("No genes tested")

        prov = result.provenance
        fig = go.Figure()
        for category, genes in self._split_by_category(result).items():
            if not genes:
                continue
            fig.add_trace(go.Scattergl(
                x=[g.mean_control for g in genes],
                y=[g.mean_test for g in genes],
                mode="markers",
                name=category,
                marker=dict(size=5, color=COLORS[category], opacity=0.7),
                text=[g.gene_symbol for g in genes],
                hovertemplate="<b>%{text}</b><br>reference: %{x:.2f}<br>test: %{y:.2f}<extra></extra>",
            ))

        means = [g.mean_control for g in result.all_genes] + [g.mean_test for g in result.all_genes]
        lo, hi = float(np.min(means)), float(np.max(means))
        fig.add_shape(type="line", x0=lo, y0=lo, x1=hi, y1=hi,
                      line=dict(dash="dash", color="gray"), opacity=0.5)
        fig.update_layout(
            title=dict(
                text=title or f"Mean expression: {prov.test_level} vs {prov.reference_level}",
                x=0.5, font=dict(size=18),
            ),
            xaxis_title=f"{prov.reference_level} (log2)",
            yaxis_title=f"{prov.test_level} (log2)",
            template=self.template,
            height=height,
            width=width,
        )
        return fig

    @staticmethod
    def _split_by_category(result: DEResult) -> Dict[str, List[GeneResult]]:
        up = {g.gene_symbol for g in result.upregulated}
        down = {g.gene_symbol for g in result.downregulated}
        split: Dict[str, List[GeneResult]] = {"neutral": [], "up": [], "down": []}
        for gene in result.all_genes:
            if gene.gene_symbol in up:
                split["up"].append(gene)
            elif gene.gene_symbol in down:
                split["down"].append(gene)
            else:
                split["neutral"].append(gene)
        return split

    def _empty_figure(self, message: str) -> go.Figure:
        """Create an empty figure with a message."""
        fig = go.Figure()
        fig.add_annotation(
            text=message,
            xref="paper", yref="paper",
            x=0.5, y=0.5,
            showarrow=False,
            font=dict(size=16, color="gray"),
        )
        fig.update_layout(
            template=self.template,
            xaxis=dict(visible=False),
            yaxis=dict(visible=False),
        )
        return fig

    def save_html(
        self,
        fig: go.Figure,
        filepath: Union[str, Path],
        include_plotlyjs: Union[bool, str] = True,
    ) -> Path:
        """
        Save figure to an HTML file.

        Args:
            fig: Plotly Figure object
            filepath: Output file path
            include_plotlyjs: Whether to include plotly.js in the file
        """
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        fig.write_html(str(path), include_plotlyjs=include_plotlyjs, full_html=True)
        logger.info("Saved %s", path)
        return path
