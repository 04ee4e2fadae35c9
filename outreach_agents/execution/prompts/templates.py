"""
Template name constants.

Pure constants - no I/O or file system knowledge.
"""


class Template:
    """Template name constants. Use these instead of raw strings."""

    DECISION_EVALUATION = "decision_evaluation"
    SESSION_SYSTEM = "session_system"
    OUTREACH_DRAFT = "outreach_draft"
