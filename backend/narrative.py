"""
Study Engine - Narrative Enhancement
Contract for the optional text generator, plus the parsing and per-field
validation that decide whether generated text may replace a computed value.

Every caller computes its deterministic result first. Generated output can
only overwrite a field after that field alone passes validation.
"""

import json
import math
import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from logger import get_logger

logger = get_logger(__name__)

Message = Dict[str, str]
FieldRule = Tuple[str, Callable[[Any], Any]]

FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
THINK_CLOSE = "</think>"


# ============================================
# ENHANCER CONTRACT
# ============================================

class NarrativeEnhancer(ABC):
    """Anything that turns role-tagged messages into text."""

    @abstractmethod
    async def generate(
        self,
        messages: List[Message],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        ...


class NullEnhancer(NarrativeEnhancer):
    """Used when no text generator is configured. Always yields empty output."""

    async def generate(self, messages, max_tokens=None, temperature=None) -> str:
        return ""


def strip_reasoning(text: str) -> str:
    """Drop a reasoning preamble that ends in </think>, keeping the answer."""
    if THINK_CLOSE in text:
        text = text.split(THINK_CLOSE)[-1]
    return text.strip()


async def safe_generate(
    enhancer: Optional[NarrativeEnhancer],
    messages: List[Message],
    max_tokens: Optional[int] = None,
    temperature: Optional[float] = None,
    purpose: str = "narrative",
) -> str:
    """
    Call the enhancer and never raise.
    Returns an empty string when the enhancer is missing, fails, or returns a non-string.
    """
    if enhancer is None:
        return ""
    try:
        raw = await enhancer.generate(messages, max_tokens=max_tokens, temperature=temperature)
    except Exception as e:
        logger.warning(f"Narrative enhancer failed for {purpose}: {e}")
        return ""
    if not isinstance(raw, str):
        logger.warning(f"Narrative enhancer returned {type(raw).__name__} for {purpose}")
        return ""
    return strip_reasoning(raw)


# ============================================
# PARSING
# ============================================

def extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    """
    Pull the outermost JSON object out of free text.
    Tolerates markdown fences and chatter around the object.
    """
    if not raw:
        return None
    cleaned = FENCE_RE.sub("", raw).strip()
    match = JSON_OBJECT_RE.search(cleaned)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


# ============================================
# FIELD VALIDATORS
# Each returns the accepted value, or None to keep the fallback.
# ============================================

def valid_text(max_length: int = 600) -> Callable[[Any], Optional[str]]:
    def check(value: Any) -> Optional[str]:
        if not isinstance(value, str) or not value.strip():
            return None
        return value.strip()[:max_length]
    return check


def valid_percentage(value: Any) -> Optional[int]:
    """A real number within 0..100, rounded. Booleans and NaN are rejected."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value < 0 or value > 100:
        return None
    return int(round(value))


def valid_choice(enum_cls: Type[Enum]) -> Callable[[Any], Optional[Enum]]:
    allowed = {member.value: member for member in enum_cls}

    def check(value: Any) -> Optional[Enum]:
        if not isinstance(value, str):
            return None
        return allowed.get(value.strip().lower())
    return check


def valid_text_list(limit: int, min_items: int = 0, max_length: int = 300) -> Callable[[Any], Optional[List[str]]]:
    def check(value: Any) -> Optional[List[str]]:
        if not isinstance(value, list):
            return None
        if not all(isinstance(item, str) and item.strip() for item in value):
            return None
        items = [item.strip()[:max_length] for item in value[:limit]]
        if len(items) < min_items:
            return None
        return items
    return check


def overlay_fields(
    fallback: Dict[str, Any],
    parsed: Optional[Dict[str, Any]],
    rules: Dict[str, FieldRule],
) -> Dict[str, Any]:
    """
    Start from the fallback values and replace each field whose source key
    is present in `parsed` and passes its validator.

    rules maps result field -> (source key in parsed output, validator).
    """
    result = dict(fallback)
    if not parsed:
        return result

    for field, (key, validate) in rules.items():
        if key not in parsed:
            continue
        value = validate(parsed[key])
        if value is None:
            logger.debug(f"Rejected generated value for {field}: {parsed[key]!r}")
            continue
        result[field] = value

    return result
