from conversa.services.llm.base import LanguageModel, LLMProvider, LLMResponse, MessageAnalysis
from conversa.services.llm.openai_provider import OpenAIProvider

__all__ = ["LanguageModel", "LLMProvider", "LLMResponse", "MessageAnalysis", "OpenAIProvider"]
