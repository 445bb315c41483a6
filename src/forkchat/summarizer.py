"""Branch summarization via a stateless completion call."""

import logging

from forkchat.gateway import RequestKind
from forkchat.models import Role, Turn, role_label

logger = logging.getLogger(__name__)

SUMMARIZE_PROMPT = """Summarize the following conversation into 3-5 short bullet points.
Focus on:
- Key decisions made
- Important facts discovered
- Conclusions reached

Be extremely concise. No fluff. Plain text only.
Format as bullet points starting with "•"."""

SUMMARIZER_INSTRUCTIONS = "You are a concise summarizer. Output only bullet points, nothing else."


def build_transcript(turns: list[Turn]) -> str:
    """`Role: text` lines in reading order, separated by blank lines."""
    return "\n\n".join(f"{role_label(t.role)}: {t.text}" for t in turns)


class Summarizer:
    """Turns a branch transcript into bullet points."""

    def __init__(self, gateway, max_bullets: int = 5):
        self.gateway = gateway
        self.max_bullets = max_bullets

    def build_prompt(self, turns: list[Turn]) -> str:
        conversation = build_transcript(
            [t for t in turns if t.role in (Role.USER, Role.ASSISTANT)]
        )
        return (
            f"{SUMMARIZE_PROMPT}\n\nLimit to {self.max_bullets} bullets maximum."
            f"\n\nConversation:\n{conversation}"
        )

    async def summarize(self, turns: list[Turn]) -> str:
        """Return bullet text for the turns; empty input yields ""."""
        if not turns:
            return ""
        response = await self.gateway.complete(
            self.build_prompt(turns),
            kind=RequestKind.SUMMARIZE,
            continuation_token=None,
            instructions=SUMMARIZER_INSTRUCTIONS,
        )
        summary = response.output_text.strip()
        logger.info(f"Summarized {len(turns)} turns into {len(summary.splitlines())} lines")
        return summary
