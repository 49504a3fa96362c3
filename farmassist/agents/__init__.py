# FarmAssist Agents
"""
Workflow engine for the disease-analysis pipeline.

Exports:
- AnalysisPipeline: table-driven stage runner that persists one step per stage
- run_pipeline: functional entry point around AnalysisPipeline.run
"""
from .pipeline import AnalysisPipeline, run_pipeline

__all__ = ["AnalysisPipeline", "run_pipeline"]
