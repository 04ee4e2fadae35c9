"""
Structured output decoding.

Language-model text is untrusted: it may arrive wrapped in markdown fences or
surrounded by prose even when JSON was requested. This module is the single
place where such text becomes a validated Pydantic model. Decoding is tried
on the raw text first, then once more after stripping known wrappers; a
second failure raises EvaluationError instead of returning a default.
"""

import logging
import re
from typing import List, Tuple, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .interface import Completion, LLMProvider
from ..services.exceptions import EvaluationError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCE = re.compile(r"^```[A-Za-z0-9_-]*\s*\n?(.*?)\n?```$", re.DOTALL)


def strip_wrappers(text: str) -> str:
    """Removes markdown fences and any prose around the outermost JSON object."""
    candidate = text.strip()
    fenced = _FENCE.match(candidate)
    if fenced:
        candidate = fenced.group(1).strip()

    start = candidate.find("{")
    end = candidate.rfind("}")
    if start != -1 and end > start:
        candidate = candidate[start:end + 1]
    return candidate


def decode_structured(text: str, response_model: Type[T]) -> T:
    try:
        return response_model.model_validate_json(text)
    except PydanticValidationError:
        pass

    try:
        return response_model.model_validate_json(strip_wrappers(text))
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {"msg": str(e)}
        logger.warning(f"Undecodable {response_model.__name__} output: {first['msg']}")
        raise EvaluationError(
            f"Model output is not a valid {response_model.__name__}: {first['msg']}",
            raw_output=text,
        ) from e


async def request_structured(
    llm: LLMProvider,
    messages: List[dict],
    response_model: Type[T],
    temperature: float = 0.0,
) -> Tuple[T, Completion]:
    """
    One provider call decoded into response_model.
    The Completion is returned alongside so callers can meter its cost even
    when they go on to reject the decoded value.
    """
    completion = await llm.complete(messages, temperature=temperature, json_output=True)
    try:
        return decode_structured(completion.text, response_model), completion
    except EvaluationError as e:
        e.cost_cents += completion.cost_cents
        raise
