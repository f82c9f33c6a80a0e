import json
import re
from typing import Any, Dict, Optional

HEDGE_WORDS = {
    "maybe", "perhaps", "possibly", "might", "could", "unclear", "unsure",
    "probably", "likely", "seems", "appears", "guess", "somewhat",
    "potentially", "arguably",
}
# hedges per 100 words at which confidence bottoms out
HEDGE_SATURATION = 5.0

_WORD_RE = re.compile(r"[A-Za-z']+")


def _unwrap_once(text: str) -> str:
    """
    - If JSON-encoded string → unwrap
    - If object with `text` field → unwrap
    """
    if not text:
        return text

    text = text.strip()

    if not (text.startswith("{") or text.startswith("[") or text.startswith('"')):
        return text

    try:
        parsed = json.loads(text)
        if isinstance(parsed, str):
            return parsed
        if isinstance(parsed, dict) and isinstance(parsed.get("text"), str):
            return parsed["text"]
    except json.JSONDecodeError:
        pass

    return text


def extract_json(raw_text: str) -> Optional[Dict[str, Any]]:
    """Best-effort extraction of the JSON object a model wrapped in prose or fences."""
    if not isinstance(raw_text, str):
        raw_text = str(raw_text)

    text = raw_text.strip()

    # unwrap JSON-inside-JSON up to 2 levels
    text = _unwrap_once(text)
    text = _unwrap_once(text)

    if text.lower().startswith("text:"):
        text = text[5:].strip()

    text = re.sub(r"^```(?:json)?\s*", "", text)
    text = re.sub(r"\s*```$", "", text).strip()

    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass

    # fallback: slice between first { and last }
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(text[start : end + 1])
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            return None

    return None


def hedge_confidence(text: str) -> float:
    """1 - normalized hedge-word density, in [0, 1]."""
    words = [w.lower() for w in _WORD_RE.findall(text)]
    if not words:
        return 0.0
    hedges = sum(1 for w in words if w in HEDGE_WORDS)
    per_100 = hedges * 100.0 / len(words)
    return max(0.0, 1.0 - min(1.0, per_100 / HEDGE_SATURATION))


def confidence_score(raw_text: str) -> float:
    """Model-reported confidence when present, hedge heuristic otherwise."""
    parsed = extract_json(raw_text)
    if parsed is not None:
        reported = parsed.get("confidence")
        if isinstance(reported, (int, float)) and not isinstance(reported, bool):
            return max(0.0, min(1.0, float(reported)))
    return hedge_confidence(raw_text)
