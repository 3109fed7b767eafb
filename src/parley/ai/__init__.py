"""Model providers, tools, and exchange orchestration."""

from .client import AIClient, ApproxByteCounter, ClientSettings, TiktokenCounter, counter_for_model

__all__ = ["AIClient", "ApproxByteCounter", "ClientSettings", "TiktokenCounter", "counter_for_model"]
