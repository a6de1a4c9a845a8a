"""Scheduled jobs."""

from dify_usage_exporter.jobs.pipeline import ExportPipeline, RunResult
from dify_usage_exporter.jobs.scheduler import JobScheduler

__all__ = ["ExportPipeline", "JobScheduler", "RunResult"]
