"""Streaming completion orchestration over OpenAI-compatible endpoints."""

from .client import AIClient, ClientSettings, ModelCheck
from .orchestration import CompletionOrchestrator, OrchestratorContext

__all__ = ["AIClient", "ClientSettings", "ModelCheck", "CompletionOrchestrator", "OrchestratorContext"]

__version__ = "0.1.0"
