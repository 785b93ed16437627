from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


@dataclass
class MessageAnalysis:
    off_topic: bool = False
    contains_pii: bool = False
    pii_type: Optional[str] = None
    detected_postal_code: Optional[str] = None
    intent: Optional[str] = None


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        """Generate response from LLM."""
        pass


class LanguageModel(ABC):
    """What the dialogue engine needs from a language model.

    history is a list of {"role": "user" | "assistant", "content": str}, oldest first.
    """

    @abstractmethod
    def classify_intent(self, history: List[dict], text: str) -> str:
        pass

    @abstractmethod
    def answer_question(self, history: List[dict], text: str) -> Optional[str]:
        pass

    @abstractmethod
    def analyze_message(self, history: List[dict], text: str) -> MessageAnalysis:
        pass
