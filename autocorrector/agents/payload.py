"""Extraction of JSON objects from free-form model output."""

import json
import re
from typing import Any, Dict

from ..core.errors import MalformedResponseError

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Pull the JSON object out of a model reply.

    Models wrap JSON in prose or markdown fences. The widest span between the
    first '{' and the last '}' is tried first, then a scan for the first
    decodable object.

    Raises:
        MalformedResponseError: no JSON object could be decoded
    """
    if not text or not text.strip():
        raise MalformedResponseError("empty model response", raw=text or "")

    fenced = _FENCE_RE.search(text)
    candidate = fenced.group(1) if fenced else text

    start = candidate.find("{")
    end = candidate.rfind("}")
    if start == -1 or end <= start:
        raise MalformedResponseError("no JSON object in model response", raw=text)

    try:
        value = json.loads(candidate[start:end + 1])
    except json.JSONDecodeError:
        value = _scan_for_object(candidate, start, text)

    if not isinstance(value, dict):
        raise MalformedResponseError(f"expected a JSON object, got {type(value).__name__}", raw=text)
    return value


def _scan_for_object(candidate: str, start: int, raw: str) -> Any:
    decoder = json.JSONDecoder()
    pos = start
    while pos != -1:
        try:
            value, _ = decoder.raw_decode(candidate, pos)
            return value
        except json.JSONDecodeError:
            pos = candidate.find("{", pos + 1)
    raise MalformedResponseError("model response contains no decodable JSON object", raw=raw)
