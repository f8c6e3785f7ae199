# Trial Signal Monitor
"""
Trial Signal Monitor - Signal Detection and Data Quality Monitoring for Clinical Trials

This package implements:
- Rule-based signal detection over per-domain clinical source records
- Cross-source consistency review across a trial's connected data systems
- Optional LLM-assisted detection with automatic fallback to the rules
- Materialization of findings into signal detections and follow-up tasks
- Real-time data quality monitoring over WebSocket sessions
"""

__version__ = "1.0.0"
__author__ = "Trial Signal Monitor Team"
