"""
Pipeline Module
"""
from .orchestrator import NexusPipeline, PipelineResult, PipelineStatus, create_pipeline

__all__ = ["NexusPipeline", "PipelineResult", "PipelineStatus", "create_pipeline"]
