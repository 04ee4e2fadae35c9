import math
from typing import List

import openai
from openai import AsyncOpenAI

from ..interface import Completion, LLMProvider
from ...services.exceptions import ProviderError


def metered_cost_cents(
    input_tokens: int,
    output_tokens: int,
    input_price_cents: float,
    output_price_cents: float,
) -> int:
    """Cost of one call, rounded up to a whole cent. Prices are per million tokens."""
    raw = (input_tokens * input_price_cents + output_tokens * output_price_cents) / 1_000_000
    return math.ceil(raw)


class OpenAIAdapter(LLMProvider):
    def __init__(
        self,
        api_key: str,
        model_name: str = "gpt-4o",
        input_price_cents: float = 250.0,
        output_price_cents: float = 1000.0,
    ):
        self.client = AsyncOpenAI(api_key=api_key)
        self.model_name = model_name
        self.input_price_cents = input_price_cents
        self.output_price_cents = output_price_cents

    async def complete(
        self,
        messages: List[dict],
        temperature: float = 0.0,
        json_output: bool = False,
    ) -> Completion:
        # This is where the specific OpenAI implementation lives.
        # If OpenAI changes their API tomorrow, we ONLY change this file.
        extra = {"response_format": {"type": "json_object"}} if json_output else {}
        try:
            completion = await self.client.chat.completions.create(
                model=self.model_name,
                messages=messages,
                temperature=temperature,
                **extra,
            )
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI request failed: {e}") from e

        usage = completion.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0

        # We unwrap the specific OpenAI response structure here
        return Completion(
            text=completion.choices[0].message.content or "",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_cents=metered_cost_cents(
                input_tokens, output_tokens, self.input_price_cents, self.output_price_cents
            ),
        )
