"""Answer synthesis over retrieved chunks."""

from .prompts import system_prompt
from .synthesis import AnswerSynthesizer, confidence_score

__all__ = ["AnswerSynthesizer", "confidence_score", "system_prompt"]
