from .generator import IssueRenderer, ReportFormat, ReportGenerator

__all__ = ['IssueRenderer', 'ReportFormat', 'ReportGenerator']
