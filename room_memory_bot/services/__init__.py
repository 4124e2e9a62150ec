from .chat_client import ChatCompletionsClient, ChatCompletionsError
from .memory_digest import MemoryDigestSummarizer
from .profile_extractor import ProfileExtractor

__all__ = ["ChatCompletionsClient", "ChatCompletionsError", "MemoryDigestSummarizer", "ProfileExtractor"]
