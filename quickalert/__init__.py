"""
QuickAlert Proximity Core

Community incident reports, vote-driven escalation into alerts, and real-time
delivery of report/alert changes to clients inside each event's effect radius.
"""

__version__ = "1.0.0"
__author__ = "QuickAlert Team"
