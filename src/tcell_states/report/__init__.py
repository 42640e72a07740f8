"""Tables and figures for differential expression results."""

from tcell_states.report.plots import PlotlyVisualizer, principal_components
from tcell_states.report.tables import ReportGenerator

__all__ = ["PlotlyVisualizer", "ReportGenerator", "principal_components"]
