"""
Report generation for batch correction analyses.
"""

from .report_generator import BatchCorrectionReportGenerator, ReportSection, markdown_table

__all__ = ['BatchCorrectionReportGenerator', 'ReportSection', 'markdown_table']
