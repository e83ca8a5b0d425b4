"""
AI Market Analysis Module

Optional LLM-backed market assessment for the ORIENT phase. The analyst only
informs strategy selection; every action still passes the risk gate, and any
analyst failure falls back to the heuristic market analyzer.
"""

from .analyst import MarketAnalyst
from .model_client import AnthropicClient, MockClient, ModelClient, OpenAIClient, create_model_client
from .schemas import AllocationHint, MarketAnalysis, MarketAnalysisInput

__all__ = [
    "MarketAnalyst",
    "ModelClient",
    "OpenAIClient",
    "AnthropicClient",
    "MockClient",
    "create_model_client",
    "AllocationHint",
    "MarketAnalysis",
    "MarketAnalysisInput",
]
