"""
Dify Usage Exporter
===================
Exports per-model token usage and cost from Dify to a partner billing API.
"""

__version__ = "1.1.0"
