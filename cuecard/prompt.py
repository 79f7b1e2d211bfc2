from __future__ import annotations
from typing import Optional

from cuecard.models import ContextView

ACTION_TYPES = ("suggestion", "followup", "help", "summarize")

# What each manual action asks the model to emphasise
ACTION_FOCUS = {
    "suggestion": "Suggest what the user could say next to keep the conversation productive.",
    "followup": "Focus on follow-up questions the user should ask about what was just said.",
    "help": "The user needs help answering what was just asked. Give them facts and angles to respond with.",
    "summarize": "Summarize where the conversation stands and what remains open.",
}

OUTPUT_FORMAT = """CRITICAL OUTPUT FORMAT REQUIREMENTS:
Follow this EXACT format. No text before or after the sections. No markdown.

INSIGHTS:
- [First insight, 8-12 words max]
- [Second insight, 8-12 words max]
- [Third insight, 8-12 words max]

TALKING POINTS:
1. [First talking point, max 10 words]
2. [Second talking point, max 10 words]
3. [Third talking point, max 10 words]

FOLLOW-UP ACTIONS:
1. [First action, max 15 words]
2. [Second action, max 15 words]
3. [Third action, max 15 words]

Rules:
- Each insight starts with "- " on its own line.
- Each talking point and action starts with a number and ". " on its own line.
- Talking points phrased as questions end with "?".
- Do not add commentary after the last action."""


def normalize_action_type(action_type: Optional[str]) -> str:
    a = (action_type or "suggestion").strip().lower()
    if a == "suggest":
        a = "suggestion"
    return a if a in ACTION_TYPES else "suggestion"


def build_prompt(action_type: Optional[str], view: ContextView) -> Optional[str]:
    """
    Single prompt builder shared by all providers.
    Returns None when there is no recent speech to react to.
    """
    if not view.has_recent_text:
        return None

    focus = ACTION_FOCUS[normalize_action_type(action_type)]
    history = view.summarized_history_text.strip()
    history_block = f"Earlier context (background only):\n{history}\n\n" if history else ""
    topic_line = f"Current topic: {view.current_topic}\n\n" if view.current_topic else ""

    return f"""You are an assistant helping someone during a live conversation. The transcript may contain minor transcription errors; interpret them from context.

{topic_line}Recent conversation transcript (newest last):
{view.recent_verbatim_text.strip()}

{history_block}Task: {focus}

Focus on the NEWEST part of the transcript. Use earlier context only when it is directly relevant to what is being discussed now. Only mention topics that actually came up in the conversation.

{OUTPUT_FORMAT}
"""
