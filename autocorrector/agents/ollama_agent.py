"""
Ollama inference backend.
Sends prompts to a local or remote Ollama server.
"""

from datetime import datetime
from typing import Dict, List

import httpx
import ollama

from .agent import InferenceResponse, InferenceService
from ..core.errors import ExternalCallError
from ..core.schema import TokenUsage
from ..util.logging import get_logger


class OllamaInferenceService(InferenceService):
    """
    Inference service backed by an Ollama model.
    The client timeout bounds every call; expiry surfaces as ExternalCallError.
    """

    def __init__(self, model_name: str, host: str = None, timeout_sec: float = 300.0, temperature: float = 0.2):
        super().__init__(model_name)
        self.host = host
        self.timeout_sec = timeout_sec
        self.temperature = temperature
        self.client = ollama.Client(host=host, timeout=timeout_sec)
        self.logger = get_logger("autocorrector.inference")

    def generate(self, prompt: str, system_prompt: str = "") -> InferenceResponse:
        messages = self._build_messages(prompt, system_prompt)
        start_time = datetime.now()
        self.call_count += 1

        try:
            response = self.client.chat(
                model=self.model_name,
                messages=messages,
                options={'temperature': self.temperature}
            )
        except ollama.ResponseError as e:
            self.logger.log_external_call_failure("ollama", e, {"model": self.model_name, "status_code": e.status_code})
            raise ExternalCallError(f"Ollama model error: {e.error}", service="ollama") from e
        except httpx.TimeoutException as e:
            self.logger.log_external_call_failure("ollama", e, {"model": self.model_name, "timeout_sec": self.timeout_sec})
            raise ExternalCallError(f"Ollama call timed out after {self.timeout_sec}s", service="ollama") from e
        except (httpx.HTTPError, ConnectionError) as e:
            self.logger.log_external_call_failure("ollama", e, {"model": self.model_name, "host": self.host})
            raise ExternalCallError(f"Ollama unreachable: {e}", service="ollama") from e

        content = response['message']['content'] or ""
        usage = TokenUsage(
            input_tokens=response.get('prompt_eval_count') or 0,
            output_tokens=response.get('eval_count') or 0
        )

        processing_time = int((datetime.now() - start_time).total_seconds() * 1000)
        self.logger.log_operation("inference.generate", "success", {
            "model": self.model_name,
            "processing_time_ms": processing_time,
            "input_tokens": usage.input_tokens,
            "output_tokens": usage.output_tokens
        })

        return InferenceResponse(content=content, token_usage=usage, model_used=self.model_name)

    def _build_messages(self, prompt: str, system_prompt: str) -> List[Dict[str, str]]:
        messages = []
        if system_prompt:
            messages.append({'role': 'system', 'content': system_prompt})
        messages.append({'role': 'user', 'content': prompt})
        return messages

    def check_health(self) -> bool:
        """Check if Ollama is reachable."""
        try:
            self.client.list()
            return True
        except (ollama.ResponseError, httpx.HTTPError, ConnectionError):
            return False
