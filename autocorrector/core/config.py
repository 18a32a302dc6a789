"""
Configuration for the auto-correction service.
Every setting is read from the environment (a local .env file is honoured).
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/autocorrect.db")

DEBUG = os.getenv("DEBUG", "true").lower() == "true"

# Inference service
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama3.1:8b")
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
INFERENCE_TIMEOUT_SEC = float(os.getenv("INFERENCE_TIMEOUT_SEC", "300"))
INFERENCE_TEMPERATURE = float(os.getenv("INFERENCE_TEMPERATURE", "0.2"))
INFERENCE_FORCE_MOCK = os.getenv("INFERENCE_FORCE_MOCK", "false").lower() == "true"

# Detection engine
AUDIT_BATCH_SIZE = int(os.getenv("AUDIT_BATCH_SIZE", "8"))
AUDIT_CHAPTER_CHAR_CAP = int(os.getenv("AUDIT_CHAPTER_CHAR_CAP", "8000"))

# Resolution judge
JUDGE_HISTORY_LIMIT = int(os.getenv("JUDGE_HISTORY_LIMIT", "5"))

# Run parameters
DEFAULT_MAX_CYCLES = int(os.getenv("DEFAULT_MAX_CYCLES", "3"))
DEFAULT_TARGET_SCORE = int(os.getenv("DEFAULT_TARGET_SCORE", "85"))
MAX_CYCLES_RANGE = (1, 5)
TARGET_SCORE_RANGE = (50, 100)
MIN_CORRECTED_CHAPTER_CHARS = int(os.getenv("MIN_CORRECTED_CHAPTER_CHARS", "100"))

# Progress reporting
PROGRESS_LOG_LIMIT = int(os.getenv("PROGRESS_LOG_LIMIT", "200"))
STREAM_LOG_TAIL = int(os.getenv("STREAM_LOG_TAIL", "50"))
STREAM_POLL_SEC = float(os.getenv("STREAM_POLL_SEC", "15"))
SUBSCRIBER_QUEUE_SIZE = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "100"))

# Runs left active by a previous process are failed after this grace period
STALE_RUN_GRACE_SEC = int(os.getenv("STALE_RUN_GRACE_SEC", "60"))

VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "true").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def get_inference_service():
    """Get the configured inference service implementation."""
    if INFERENCE_FORCE_MOCK:
        from ..agents.mock_agent import MockInferenceService
        return MockInferenceService()

    from ..agents.ollama_agent import OllamaInferenceService
    return OllamaInferenceService(
        model_name=OLLAMA_MODEL,
        host=OLLAMA_HOST,
        timeout_sec=INFERENCE_TIMEOUT_SEC,
        temperature=INFERENCE_TEMPERATURE
    )


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if AUDIT_BATCH_SIZE < 1:
        issues.append("AUDIT_BATCH_SIZE must be >= 1")

    if AUDIT_CHAPTER_CHAR_CAP < 500:
        issues.append("AUDIT_CHAPTER_CHAR_CAP must be >= 500")

    if JUDGE_HISTORY_LIMIT < 1:
        issues.append("JUDGE_HISTORY_LIMIT must be >= 1")

    if INFERENCE_TIMEOUT_SEC <= 0:
        issues.append("INFERENCE_TIMEOUT_SEC must be > 0")

    if not MAX_CYCLES_RANGE[0] <= DEFAULT_MAX_CYCLES <= MAX_CYCLES_RANGE[1]:
        issues.append(f"DEFAULT_MAX_CYCLES must be within {MAX_CYCLES_RANGE}")

    if not TARGET_SCORE_RANGE[0] <= DEFAULT_TARGET_SCORE <= TARGET_SCORE_RANGE[1]:
        issues.append(f"DEFAULT_TARGET_SCORE must be within {TARGET_SCORE_RANGE}")

    if PROGRESS_LOG_LIMIT < 1:
        issues.append("PROGRESS_LOG_LIMIT must be >= 1")

    if SUBSCRIBER_QUEUE_SIZE < 2:
        issues.append("SUBSCRIBER_QUEUE_SIZE must be >= 2")

    return issues
