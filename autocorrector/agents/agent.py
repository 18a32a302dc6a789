"""
Base inference interface.
Detection, resolution judging and correction all talk to a model through
InferenceService.generate(); implementations raise ExternalCallError on failure.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict

from ..core.schema import TokenUsage


@dataclass
class InferenceResponse:
    """Text produced by a model call plus its token accounting."""
    content: str
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    model_used: str = ""


class InferenceService(ABC):
    """
    Abstract base class for text generation backends.
    Calls block until the model returns or the backend's timeout expires.
    """

    def __init__(self, model_name: str):
        self.model_name = model_name
        self.call_count = 0

    @abstractmethod
    def generate(self, prompt: str, system_prompt: str = "") -> InferenceResponse:
        """
        Run one completion.

        Args:
            prompt: User prompt
            system_prompt: Optional system instruction

        Returns:
            InferenceResponse with the raw model text

        Raises:
            ExternalCallError: the backend failed, timed out or was unreachable
        """

    def get_status(self) -> Dict[str, Any]:
        """Get current backend status."""
        return {
            'model_name': self.model_name,
            'call_count': self.call_count,
            'backend': type(self).__name__
        }
