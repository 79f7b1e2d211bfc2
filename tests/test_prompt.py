from cuecard.models import ContextView
from cuecard.prompt import ACTION_FOCUS, OUTPUT_FORMAT, build_prompt, normalize_action_type


def view(recent="They asked about the budget.", history="", topic=None):
    return ContextView(
        recent_verbatim_text=recent,
        summarized_history_text=history,
        combined_text="",
        recent_count=1 if recent else 0,
        current_topic=topic,
    )


def test_no_recent_text_means_no_prompt():
    assert build_prompt("suggestion", view(recent="  ")) is None


def test_prompt_contains_transcript_focus_and_format():
    prompt = build_prompt("followup", view(topic="budget"))
    assert "They asked about the budget." in prompt
    assert "Current topic: budget" in prompt
    assert ACTION_FOCUS["followup"] in prompt
    assert OUTPUT_FORMAT in prompt
    assert "Earlier context" not in prompt


def test_history_is_included_as_background():
    prompt = build_prompt("help", view(history="We discussed hiring."))
    assert "Earlier context (background only):\nWe discussed hiring." in prompt
    assert prompt.index("They asked about the budget.") < prompt.index("We discussed hiring.")


def test_action_type_normalization():
    assert normalize_action_type(None) == "suggestion"
    assert normalize_action_type("suggest") == "suggestion"
    assert normalize_action_type(" Summarize ") == "summarize"
    assert normalize_action_type("dance") == "suggestion"
