from .summary import ClientReportSummary, LedgerActivitySummary, ReportingService, RuleEnrollmentSummary

__all__ = ["ClientReportSummary", "LedgerActivitySummary", "ReportingService", "RuleEnrollmentSummary"]
