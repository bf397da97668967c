"""
SDK for Token Meter.

Provides metered wrappers around model provider clients.
"""

from .openai_client import ConsumptionRejected, MeteredOpenAI

__all__ = ["ConsumptionRejected", "MeteredOpenAI"]
