"""
Mock inference backend.
Returns canned JSON without external dependencies.
Used for testing, development, and when no model server is available.
"""

import json
from typing import Callable, List, Optional, Union

from .agent import InferenceResponse, InferenceService
from ..core.errors import ExternalCallError
from ..core.schema import TokenUsage

# A payload every consumer can parse: no violations, nothing resolved, no rewrite
CLEAN_PAYLOAD = {
    "violations": [],
    "entitiesExtracted": {"characters": [], "locations": [], "timeline": []},
    "isResolved": False,
    "confidence": 0.5,
    "reasoning": "mock backend",
    "correctedText": "",
    "appliedFixes": [],
    "structuralChange": False
}

Reply = Union[str, dict, Exception]


class MockInferenceService(InferenceService):
    """
    Scripted inference service.

    Replies are taken from `responses` in order; once exhausted (or when none
    were given) `responder` is consulted, then the clean payload is returned.
    Exceptions in the script are raised, ExternalCallError unchanged.
    """

    def __init__(self, responses: Optional[List[Reply]] = None,
                 responder: Optional[Callable[[str, str], Reply]] = None,
                 model_name: str = "mock-model"):
        super().__init__(model_name)
        self.responses = list(responses or [])
        self.responder = responder
        self.prompts: List[str] = []

    def generate(self, prompt: str, system_prompt: str = "") -> InferenceResponse:
        self.call_count += 1
        self.prompts.append(prompt)

        if self.responses:
            reply = self.responses.pop(0)
        elif self.responder is not None:
            reply = self.responder(prompt, system_prompt)
        else:
            reply = CLEAN_PAYLOAD

        if isinstance(reply, ExternalCallError):
            raise reply
        if isinstance(reply, Exception):
            raise ExternalCallError(str(reply), service="mock") from reply

        content = reply if isinstance(reply, str) else json.dumps(reply)
        usage = TokenUsage(input_tokens=len(prompt) // 4, output_tokens=len(content) // 4)
        return InferenceResponse(content=content, token_usage=usage, model_used=self.model_name)

    def check_health(self) -> bool:
        return True
