from .history import AuditHistory, extract_health_score, extract_summary

__all__ = ["AuditHistory", "extract_health_score", "extract_summary"]
