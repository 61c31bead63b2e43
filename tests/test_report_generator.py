import json

import numpy as np
import pandas as pd
import pytest

from reporting.report_generator import BatchCorrectionReportGenerator, markdown_table


def test_markdown_table_formats_values():
    df = pd.DataFrame({'value': [0.12345, np.nan]}, index=pd.Index(['raw', 'combat'], name='data'))

    table = markdown_table(df)

    lines = table.splitlines()
    assert lines[0] == '| data | value |'
    assert lines[2] == '| raw | 0.123 |'
    assert lines[3] == '| combat | NA |'


def test_invalid_plotly_mode(tmp_path):
    with pytest.raises(ValueError):
        BatchCorrectionReportGenerator(str(tmp_path), plotly_js='offline')


def test_render_sections(tmp_path, dataset):
    report = BatchCorrectionReportGenerator(str(tmp_path), title='Test Report')
    report.dataset_section(dataset)
    report.pca_section(
        'Raw data',
        'Uncorrected PCA.',
        ['<div class="figure">static</div>'],
        ['<div class="figure">interactive</div>'],
        parameters={'Covariates': 'cancer'},
        metrics={'silhouette_batch': 0.5}
    )

    page = report.render()

    assert page.startswith('<!DOCTYPE html>')
    assert '<title>Test Report</title>' in page
    assert '<h2>Dataset</h2>' in page
    assert '<h2>Raw data</h2>' in page
    assert '<table>' in page
    assert 'static</div>' in page and 'interactive</div>' in page
    assert 'cdn.plot.ly' in page


def test_render_without_plotly_script(tmp_path):
    report = BatchCorrectionReportGenerator(str(tmp_path), plotly_js=False)
    assert '<script' not in report.render()


def test_metrics_section(tmp_path):
    report = BatchCorrectionReportGenerator(str(tmp_path))
    table = pd.DataFrame(
        {'silhouette_batch': [0.6, 0.05]},
        index=pd.Index(['raw', 'no_covariates'], name='data')
    )

    section = report.metrics_section(table)

    assert section.title == 'Metric comparison'
    assert '| no_covariates | 0.050 |' in section.markdown


def test_write_and_json_summary(tmp_path):
    out = tmp_path / 'nested' / 'report'
    report = BatchCorrectionReportGenerator(str(out), plotly_js=False)
    report.add_section('Notes', 'Nothing to see.')

    path = report.write('r.html')
    json_path = report.save_json_summary({'metrics': {'raw': {'x': 1.0}}}, 's.json')

    assert path.exists()
    assert 'Nothing to see.' in path.read_text(encoding='utf-8')
    assert json.loads(json_path.read_text())['metrics']['raw']['x'] == 1.0


def test_static_figure_embeds_png(tmp_path):
    import matplotlib.pyplot as plt

    report = BatchCorrectionReportGenerator(str(tmp_path), dpi=30)
    fig, ax = plt.subplots()
    ax.plot([0, 1], [0, 1])

    fragment = report.static_figure(fig, caption='Line')

    assert 'src="data:image/png;base64,' in fragment
    assert '<em>Line</em>' in fragment


def test_render_inline_plotly_single_script(tmp_path):
    report = BatchCorrectionReportGenerator(str(tmp_path), plotly_js='inline')
    report.add_section('Raw data', 'Uncorrected PCA.')

    page = report.render()

    assert page.count('<script type="text/javascript">') == 1
    assert '<script src=' not in page
    assert '<script' not in page.rsplit('<body>', 1)[1]


def test_inline_plotly_library_embedded_once(tmp_path):
    import plotly.graph_objects as go
    from plotly.offline import get_plotlyjs

    report = BatchCorrectionReportGenerator(str(tmp_path), plotly_js='inline')
    figures = [report.interactive_figure(go.Figure(go.Scatter(x=[0, 1], y=[1, 0]))) for _ in range(2)]
    report.add_section('Interactive', 'Two figures.', figures)

    page = report.render()

    assert page.count(get_plotlyjs()) == 1
    assert page.count('class="plotly-graph-div"') == 2
