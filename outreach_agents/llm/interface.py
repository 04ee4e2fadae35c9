from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List


@dataclass
class Completion:
    """
    Raw text returned by a provider plus the metered usage of the call.
    """
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_cents: int = 0


class LLMProvider(ABC):
    """
    Abstract Base Class interface that defines the contract for any LLM provider
    (OpenAI, a local model server, etc.)
    """

    @abstractmethod
    async def complete(
        self,
        messages: List[dict],
        temperature: float = 0.0,
        json_output: bool = False,
    ) -> Completion:
        """
        Sends chat messages and returns the model's text.

        When json_output is set the provider is asked for a JSON object, but
        callers must still treat the text as untrusted and decode it through
        llm.decoding. Transport failures raise ProviderError.
        """
        pass
