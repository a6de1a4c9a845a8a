"""
Delivery
========
Partner API client, retry policy, spool storage and the sender tying them together.
"""

from dify_usage_exporter.sender.external_api import ExternalApiSender, ResendSummary, SendOutcome
from dify_usage_exporter.sender.http_client import PartnerApiClient
from dify_usage_exporter.sender.spool import SpoolManager

__all__ = [
    "ExternalApiSender",
    "PartnerApiClient",
    "ResendSummary",
    "SendOutcome",
    "SpoolManager",
]
