"""
Prompt templates for the generation provider.

Each template names the variables it expects; `render` fails loudly when one
is missing so a caller contract drift surfaces before any upstream call.
"""

from __future__ import annotations

import string
from dataclasses import dataclass
from typing import Mapping, Optional

from core.errors import ValidationIssue


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    text: str
    temperature: Optional[float] = None
    system: Optional[str] = None

    @property
    def variables(self) -> frozenset[str]:
        return frozenset(
            field for _, field, _, _ in string.Formatter().parse(self.text) if field
        )

    def render(self, variables: Mapping[str, object]) -> str:
        missing = sorted(self.variables - set(variables))
        if missing:
            raise ValidationIssue(
                f"prompt '{self.name}' missing variables: {missing}",
                field="variables",
                error_type="required",
            )
        return self.text.format(**{key: str(variables[key]) for key in self.variables})


THREAD_SUMMARY = PromptTemplate(
    name="thread_summary",
    system="You summarize sales conversations for a product recommendation engine.",
    text="""Summarize the conversation below.

CONVERSATION ({message_count} messages):
{messages}

PREVIOUS SUMMARY:
{previous_summary}

INSTRUCTIONS:
1. Capture the main points, intentions, needs and context of the user.
2. If a previous summary exists, keep every fact from it that is still relevant.
   Revise a fact only when the new messages contradict it.
3. Separate observed facts from inferences.
4. Keep the summary between 50 and 300 words.
5. Focus on information that helps recommend products or next steps.

SUMMARY:""",
)

USER_CONTEXT_NARRATIVE = PromptTemplate(
    name="user_context_narrative",
    system="You maintain a concise personality and needs profile of a user.",
    text="""Build an updated profile of the user from their current context and the
latest conversation summary.

Cover communication style, decision drivers, constraints such as budget, team
size or timeline, and the product needs they expressed. Keep tentative
observations marked as tentative.

CURRENT CONTEXT:
{current_context}

THREAD SUMMARY:
{thread_summary}

Keep the profile between 50 and 150 words.

PROFILE:""",
)

PURCHASE_INTENT = PromptTemplate(
    name="purchase_intent",
    temperature=0.0,
    system="You classify purchase intent. Reply with JSON only.",
    text="""Classify how close the user is to buying.

THREAD SUMMARY:
{thread_summary}

RECENT MESSAGES:
{recent_messages}

Reply with a JSON object with keys:
  "level": one of "low", "moderate", "high"
  "score": integer from 0 to 100
  "rationale": one sentence

JSON:""",
)

RECOMMENDATION_CONTEXT = PromptTemplate(
    name="recommendation_context",
    text="""Prepare a recommendation-focused summary of the user.

USER CONTEXT:
{user_context}

THREAD SUMMARY:
{thread_summary}

RECENT MESSAGES:
{recent_messages}

INSTRUCTIONS:
1. Focus on needs, preferences and specific product requirements.
2. Include business context when relevant.
3. Keep it between 50 and 100 words, in wording that matches product catalogs.

RECOMMENDATION CONTEXT:""",
)

CHAT_RESPONSE = PromptTemplate(
    name="chat_response",
    temperature=0.7,
    system="You are an assistant that recommends products and solutions.",
    text="""Write a helpful, personalized reply based on the conversation and the
available recommendations.

CONVERSATION SUMMARY:
{thread_summary}

USER CONTEXT:
{user_context}

AVAILABLE RECOMMENDATIONS ({recommendations_count} products):
{recommendations}

INSTRUCTIONS:
1. Present relevant recommendations naturally and explain why each one fits.
2. Order them by relevance and include URLs when available.
3. If nothing relevant is available, say so and suggest alternatives.
4. Keep the reply conversational and between 50 and 150 words.

REPLY:""",
)
