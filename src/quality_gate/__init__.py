"""Security gate for the release orchestrator.

Normalizes scanner output, scores it against configured thresholds per
scope, and renders Markdown reports.
"""

__version__ = "1.0.0"
