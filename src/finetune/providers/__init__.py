"""
Training provider clients.
"""

from .base import ProviderJob, TrainingProvider
from .openai_client import OpenAIFineTuneClient

__all__ = ["ProviderJob", "TrainingProvider", "OpenAIFineTuneClient"]
