"""Pull the first JSON object out of a model response (code fences, prose, trailing text)."""

from __future__ import annotations

import json
import re

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_decoder = json.JSONDecoder()


def extract_json(text: str) -> dict | list | None:
    """Return the first decodable JSON object or array in *text*, else ``None``."""
    if not text or not text.strip():
        return None

    candidates = [m.group(1) for m in _FENCE.finditer(text)]
    candidates.append(text)

    for candidate in candidates:
        stripped = candidate.strip()
        try:
            return json.loads(stripped)
        except ValueError:
            pass
        for index, ch in enumerate(stripped):
            if ch not in "{[":
                continue
            try:
                value, _end = _decoder.raw_decode(stripped, index)
            except ValueError:
                continue
            return value
    return None
