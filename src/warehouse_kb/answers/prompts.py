"""
Prompt templates for answer synthesis.
"""

from __future__ import annotations

from ..models import AnswerType

LANGUAGE_NAMES = {"en": "English", "ar": "Arabic", "de": "German"}

SYSTEM_PROMPT = """
You are the knowledge assistant of a warehouse operations team. You help
workers find accurate information in company documents quickly.

Rules:
- Answer in {language}.
- Use only the numbered sources you are given. Cite them inline as [Source N].
- If a source contains safety warnings, procedures or protective equipment
  requirements relevant to the question, state them explicitly.
- If the sources do not contain the information, say so plainly instead of guessing.

{type_instruction}
""".strip()

TYPE_INSTRUCTIONS: dict[AnswerType, str] = {
    "qa": "Give a direct, concise answer to the question.",
    "summary": "Summarize the relevant information as a short structured overview.",
    "explanation": "Explain the topic step by step, defining warehouse terms where needed.",
    "troubleshooting": (
        "Diagnose the problem: list likely causes, then numbered steps to resolve it, "
        "and when to escalate."
    ),
    "safety": (
        "Focus on safety: hazards, required protective equipment, mandatory procedures "
        "and emergency steps. Put critical warnings first."
    ),
}

GAP_INSTRUCTION = (
    "Answer using the sources above. If they do not fully answer the question, "
    "say which part is missing."
)

RELATED_QUESTIONS_PROMPT = """
A warehouse worker asked: "{query}"
They received this answer: "{answer}"

Suggest 3 short follow-up questions they might ask next, in {language}.
Respond with a JSON array of strings and nothing else.
""".strip()


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code)


def system_prompt(language: str, answer_type: AnswerType) -> str:
    return SYSTEM_PROMPT.format(
        language=language_name(language),
        type_instruction=TYPE_INSTRUCTIONS[answer_type],
    )
