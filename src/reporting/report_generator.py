#!/usr/bin/env python3
"""
Batch Correction Report Generator
=================================

Generates a single HTML report including:
1. Dataset and study design summary
2. PCA of the raw data (static + interactive)
3. PCA after each ComBat variant
4. Batch-effect metrics across variants

Sections are written in markdown, converted with the markdown library,
and figures are inlined as PNG data URIs or plotly divs.
"""

import html
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

import markdown
import numpy as np
import pandas as pd

from preprocessing.data_loader import ExpressionDataset, summarize_design
from visualization.plots import figure_to_base64, plotly_to_html

logger = logging.getLogger(__name__)

PLOTLY_JS_MODES = ('cdn', 'inline', False)

HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{title}</title>
    {plotly_script}
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            max-width: 1100px;
            margin: 0 auto;
            padding: 20px;
            line-height: 1.6;
        }}
        table {{
            border-collapse: collapse;
            margin: 20px 0;
        }}
        th, td {{
            border: 1px solid #ddd;
            padding: 8px 12px;
            text-align: left;
        }}
        th {{
            background-color: #f4f4f4;
        }}
        h1 {{ color: #2c3e50; }}
        h2 {{ color: #34495e; border-bottom: 2px solid #3498db; padding-bottom: 10px; }}
        h3 {{ color: #7f8c8d; }}
        .figure-row {{ display: flex; flex-wrap: wrap; gap: 16px; align-items: flex-start; }}
        .figure {{ flex: 1 1 480px; }}
        .figure img {{ max-width: 100%; }}
    </style>
</head>
<body>
{body}
</body>
</html>
"""


def markdown_table(df: pd.DataFrame, float_format: str = '{:.3f}', index: bool = True) -> str:
    """Render a DataFrame as a markdown pipe table."""
    frame = df.reset_index() if index else df
    headers = [str(c) for c in frame.columns]

    def fmt(value) -> str:
        if isinstance(value, (float, np.floating)):
            return 'NA' if np.isnan(value) else float_format.format(value)
        return str(value)

    lines = [
        '| ' + ' | '.join(headers) + ' |',
        '|' + '|'.join(['---'] * len(headers)) + '|'
    ]
    for row in frame.itertuples(index=False):
        lines.append('| ' + ' | '.join(fmt(v) for v in row) + ' |')

    return '\n'.join(lines)


@dataclass
class ReportSection:
    """A titled block of markdown followed by figures."""
    title: str
    markdown: str = ""
    figures: List[str] = field(default_factory=list)
    level: int = 2


class BatchCorrectionReportGenerator:
    """Assemble the batch correction report."""

    def __init__(
        self,
        output_dir: str = "results/report",
        title: str = "Batch Effect Correction Report",
        plotly_js: Union[str, bool] = 'cdn',
        dpi: int = 110
    ):
        if plotly_js not in PLOTLY_JS_MODES:
            raise ValueError(f"plotly_js must be one of {PLOTLY_JS_MODES}, got {plotly_js!r}")

        self.output_dir = Path(output_dir)
        self.title = title
        self.plotly_js = plotly_js
        self.dpi = dpi
        self.sections: List[ReportSection] = []

    def add_section(
        self,
        title: str,
        markdown_text: str = "",
        figures: Optional[List[str]] = None,
        level: int = 2
    ) -> ReportSection:
        section = ReportSection(title=title, markdown=markdown_text,
                                figures=list(figures or []), level=level)
        self.sections.append(section)
        return section

    def static_figure(self, fig, caption: str = "") -> str:
        """Embed a matplotlib figure as an inline PNG."""
        uri = figure_to_base64(fig, dpi=self.dpi)
        alt = html.escape(caption or 'figure')
        caption_html = f"<p><em>{html.escape(caption)}</em></p>" if caption else ""
        return f'<div class="figure"><img src="{uri}" alt="{alt}">{caption_html}</div>'

    def interactive_figure(self, fig) -> str:
        """Embed a plotly figure; plotly.js is loaded once in the page head."""
        return f'<div class="figure">{plotly_to_html(fig, include_plotlyjs=False)}</div>'

    def dataset_section(self, dataset: ExpressionDataset) -> ReportSection:
        """Dataset summary and batch x cancer design table."""
        design = summarize_design(dataset)
        design.index.name = 'batch'
        design.columns.name = None

        text = f"""- **Dataset:** {dataset.name}
- **Description:** {dataset.description or 'n/a'}
- **Genes:** {dataset.n_genes}
- **Samples:** {dataset.n_samples}
- **Batches:** {', '.join(str(b) for b in dataset.batches)}

### Samples per batch and cancer status

{markdown_table(design)}

Batches group samples by processing run. When batch and cancer status are
unevenly distributed, batch-driven clustering can be mistaken for biology.
"""
        return self.add_section("Dataset", text)

    def pca_section(
        self,
        title: str,
        description: str,
        static_figures: List[str],
        interactive_figures: List[str],
        parameters: Optional[Dict[str, str]] = None,
        metrics: Optional[Dict[str, float]] = None
    ) -> ReportSection:
        """One block of PCA plots with optional parameters and metrics tables."""
        parts = [description.strip()]

        if parameters:
            table = pd.DataFrame({'Parameter': list(parameters), 'Value': list(parameters.values())})
            parts.append("#### Parameters\n\n" + markdown_table(table, index=False))

        if metrics:
            table = pd.DataFrame({'Metric': list(metrics), 'Value': list(metrics.values())})
            parts.append("#### Batch-effect metrics\n\n" + markdown_table(table, index=False))

        figures = []
        if static_figures:
            figures.append('<div class="figure-row">' + ''.join(static_figures) + '</div>')
        if interactive_figures:
            figures.append('<div class="figure-row">' + ''.join(interactive_figures) + '</div>')

        return self.add_section(title, "\n\n".join(parts), figures)

    def metrics_section(self, metrics_table: pd.DataFrame) -> ReportSection:
        """Comparison of metrics for the raw data and every variant."""
        text = f"""{markdown_table(metrics_table)}

- **silhouette_batch**: separation of batches in PCA space; lower is better after correction
- **silhouette_condition**: separation of cancer status; should be retained
- **batch_associated_genes_pct**: genes with a significant one-way ANOVA against batch
- **median_batch_variance_pct** / **median_condition_variance_pct**: median share of per-gene variance explained
"""
        return self.add_section("Metric comparison", text)

    def _plotly_script(self) -> str:
        if self.plotly_js == 'cdn':
            return '<script src="https://cdn.plot.ly/plotly-2.35.2.min.js" charset="utf-8"></script>'
        if self.plotly_js == 'inline':
            from plotly.offline import get_plotlyjs
            return f'<script type="text/javascript">{get_plotlyjs()}</script>'
        return ''

    def render(self) -> str:
        """Render all sections into a complete HTML document."""
        report_time = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        header = f"""# {self.title}

**Generated:** {report_time}

---
"""
        body = [markdown.markdown(header, extensions=['tables', 'fenced_code'])]

        for section in self.sections:
            heading = '#' * section.level
            text = f"{heading} {section.title}\n\n{section.markdown}"
            body.append(markdown.markdown(text, extensions=['tables', 'fenced_code']))
            body.extend(section.figures)

        return HTML_TEMPLATE.format(
            title=html.escape(self.title),
            plotly_script=self._plotly_script(),
            body="\n".join(body)
        )

    def write(self, filename: str = "batch_correction_report.html") -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        report_file = self.output_dir / filename

        with open(report_file, 'w', encoding='utf-8') as f:
            f.write(self.render())

        logger.info(f"Report saved to: {report_file}")
        return report_file

    def save_json_summary(self, summary: dict, filename: str = "batch_correction_summary.json") -> Path:
        """Save JSON summary for programmatic access"""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        json_file = self.output_dir / filename

        with open(json_file, 'w') as f:
            json.dump(summary, f, indent=2, default=str)

        return json_file
