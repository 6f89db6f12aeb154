"""
Video Generation

RenderingAgent contract, its HTTP implementation and the orchestrator that
drives one job through the generation protocol.
"""

from .agent import ArtifactRef, Credentials, GenerationParams, RenderingAgent, Session
from .orchestrator import GenerationOrchestrator, GenerationOutcome, GenerationState
from .remote_agent import HttpRenderingAgent

__all__ = [
    "ArtifactRef",
    "Credentials",
    "GenerationParams",
    "RenderingAgent",
    "Session",
    "GenerationOrchestrator",
    "GenerationOutcome",
    "GenerationState",
    "HttpRenderingAgent",
]
