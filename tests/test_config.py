"""
Configuration and inference backend tests.
"""

from unittest.mock import MagicMock, patch

import httpx
import ollama
import pytest

from autocorrector.agents.mock_agent import MockInferenceService
from autocorrector.agents.ollama_agent import OllamaInferenceService
from autocorrector.core import config
from autocorrector.core.errors import ExternalCallError


class TestValidateConfig:
    def test_defaults_are_valid(self):
        assert config.validate_config() == []

    @pytest.mark.parametrize("name,value", [
        ("AUDIT_BATCH_SIZE", 0),
        ("AUDIT_CHAPTER_CHAR_CAP", 100),
        ("JUDGE_HISTORY_LIMIT", 0),
        ("INFERENCE_TIMEOUT_SEC", 0),
        ("DEFAULT_MAX_CYCLES", 9),
        ("DEFAULT_TARGET_SCORE", 20),
        ("PROGRESS_LOG_LIMIT", 0),
        ("SUBSCRIBER_QUEUE_SIZE", 1),
    ])
    def test_invalid_setting_reported(self, name, value):
        with patch.object(config, name, value):
            issues = config.validate_config()
        assert len(issues) == 1
        assert issues[0].startswith(name)

    def test_ensure_db_directory(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "runs.db"
        config.ensure_db_directory(str(db_path))
        assert db_path.parent.is_dir()


class TestInferenceServiceSelection:
    def test_force_mock(self):
        with patch.object(config, "INFERENCE_FORCE_MOCK", True):
            service = config.get_inference_service()
        assert isinstance(service, MockInferenceService)

    def test_ollama_by_default(self):
        with patch.object(config, "INFERENCE_FORCE_MOCK", False), \
             patch("autocorrector.agents.ollama_agent.ollama.Client") as client_cls:
            service = config.get_inference_service()

        assert isinstance(service, OllamaInferenceService)
        assert service.model_name == config.OLLAMA_MODEL
        client_cls.assert_called_once_with(host=config.OLLAMA_HOST, timeout=config.INFERENCE_TIMEOUT_SEC)


@pytest.fixture
def ollama_client():
    with patch("autocorrector.agents.ollama_agent.ollama.Client") as client_cls:
        client = MagicMock()
        client_cls.return_value = client
        yield client


class TestOllamaInferenceService:
    def test_generate_returns_content_and_usage(self, ollama_client):
        ollama_client.chat.return_value = {
            "message": {"role": "assistant", "content": '{"violations": []}'},
            "prompt_eval_count": 120,
            "eval_count": 40
        }
        service = OllamaInferenceService("llama3.1:8b", host="http://ollama:11434", temperature=0.1)

        response = service.generate("Audit these chapters", system_prompt="You audit fiction.")

        assert response.content == '{"violations": []}'
        assert response.token_usage.input_tokens == 120
        assert response.token_usage.output_tokens == 40
        assert response.model_used == "llama3.1:8b"
        assert service.call_count == 1

        kwargs = ollama_client.chat.call_args.kwargs
        assert kwargs["model"] == "llama3.1:8b"
        assert kwargs["messages"][0] == {"role": "system", "content": "You audit fiction."}
        assert kwargs["messages"][1]["content"] == "Audit these chapters"
        assert kwargs["options"] == {"temperature": 0.1}

    def test_missing_usage_counts_default_to_zero(self, ollama_client):
        ollama_client.chat.return_value = {"message": {"content": "{}"}}
        service = OllamaInferenceService("llama3.1:8b")

        response = service.generate("prompt")
        assert response.token_usage.input_tokens == 0
        assert response.token_usage.output_tokens == 0

    def test_model_error_becomes_external_call_error(self, ollama_client):
        ollama_client.chat.side_effect = ollama.ResponseError("model not found", 404)
        service = OllamaInferenceService("missing-model")

        with pytest.raises(ExternalCallError) as exc_info:
            service.generate("prompt")
        assert "model not found" in str(exc_info.value)
        assert exc_info.value.service == "ollama"

    def test_timeout_becomes_external_call_error(self, ollama_client):
        ollama_client.chat.side_effect = httpx.ConnectTimeout("timed out")
        service = OllamaInferenceService("llama3.1:8b", timeout_sec=5)

        with pytest.raises(ExternalCallError) as exc_info:
            service.generate("prompt")
        assert "timed out after 5" in str(exc_info.value)

    def test_unreachable_server(self, ollama_client):
        ollama_client.chat.side_effect = httpx.ConnectError("connection refused")
        service = OllamaInferenceService("llama3.1:8b")

        with pytest.raises(ExternalCallError, match="unreachable"):
            service.generate("prompt")

    def test_check_health(self, ollama_client):
        service = OllamaInferenceService("llama3.1:8b")
        assert service.check_health() is True

        ollama_client.list.side_effect = httpx.ConnectError("connection refused")
        assert service.check_health() is False
