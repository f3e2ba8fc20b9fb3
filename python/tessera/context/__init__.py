from .tokens import CharacterCounter, TiktokenCounter, TokenCounter, message_text
from .trim import StandardTrimStrategy, TrimStrategy, trim_to_fit

__all__ = [
  "CharacterCounter",
  "TiktokenCounter",
  "TokenCounter",
  "message_text",
  "StandardTrimStrategy",
  "TrimStrategy",
  "trim_to_fit",
]
