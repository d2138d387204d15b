"""
Generation Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class GenerationPrompt:
    """
    Provider-agnostic generation request.

    A single user turn with a system instruction.
    """

    model_key: str
    system_instruction: str
    prompt: str


@dataclass(frozen=True)
class GenerationOutput:
    """
    Provider-agnostic generation result.

    Returned after a successful generation call.
    """

    text: str
    model_key: str
    finish_reason: str | None = None


class GenerationProvider(Protocol):
    """
    Generation provider protocol.

    Any text generation backend must implement this interface so the
    assistants stay provider-agnostic.
    """

    async def generate(self, request: GenerationPrompt) -> GenerationOutput:
        """
        Generate a reply for one prompt.

        Args:
            request: Model, system instruction and prompt

        Returns:
            Generated text

        Raises:
            GenerationProviderError: If the provider call fails
        """
        ...
