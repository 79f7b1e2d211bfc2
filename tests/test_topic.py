import pytest

from cuecard.topic import TopicDetector, entities, has_interrogative_opener, is_question, jaccard, terms

from helpers import make_segment


def feed(detector, texts_and_times):
    recent = []
    decisions = []
    for text, ts in texts_and_times:
        seg = make_segment(text, ts)
        decisions.append(detector.evaluate(seg, recent[-3:]))
        recent.append(seg)
    return decisions


def test_budget_then_timeline_question_changes_topic():
    decisions = feed(TopicDetector(), [
        ("What is the budget?", 0.0),
        ("The budget is $50k.", 0.1),
        ("How about the timeline?", 0.2),
    ])
    assert decisions[0].changed
    assert decisions[2].changed
    assert "interrogative_opener" in decisions[2].signals
    assert "low_overlap" in decisions[2].signals
    assert decisions[2].confidence == pytest.approx(0.9)


def _budget_baseline():
    return [
        ("We reviewed the budget numbers.", 0.0),
        ("The budget numbers look fine.", 1.0),
    ]


def test_silence_gap_alone_is_a_weak_change():
    decisions = feed(TopicDetector(), _budget_baseline() + [("The budget numbers still look fine.", 20.0)])
    assert decisions[2].changed
    assert decisions[2].signals == ["silence_gap"]
    assert decisions[2].confidence == pytest.approx(0.5)


def test_continuing_statement_is_not_a_change():
    decisions = feed(TopicDetector(), _budget_baseline() + [("The budget numbers still look fine.", 2.0)])
    assert not decisions[2].changed
    assert decisions[2].signals == []
    assert decisions[2].confidence == 0.0


def test_several_new_entities_are_a_strong_change():
    decisions = feed(TopicDetector(), _budget_baseline() + [("Then Alice met Bob and Carol in Paris.", 2.0)])
    third = decisions[2]
    assert third.changed
    assert "new_entities" in third.signals
    assert third.confidence == pytest.approx(0.9)
    assert third.label == "Alice Bob Carol"


def test_auxiliary_opener_needs_question_mark():
    assert not has_interrogative_opener("Is the budget final.")
    assert has_interrogative_opener("Is the budget final?")
    assert has_interrogative_opener("why would we wait")
    assert not has_interrogative_opener("")


def test_is_question():
    assert is_question("Where are we")
    assert is_question("We are done?")
    assert not is_question("We are done.")
    assert not is_question("   ")


def test_entities_skip_sentence_starts_and_pronoun_i():
    assert entities("Yesterday I met Dana. Then we called Lee.") == ["Dana", "Lee"]


def test_terms_and_jaccard():
    assert terms("The budget is $50k and it's fine") == {"budget", "50k", "fine"}
    assert jaccard(set(), set()) == 1.0
    assert jaccard({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)


def test_label_falls_back_to_frequent_terms():
    assert TopicDetector().label_for("we reviewed the budget budget numbers") == "budget reviewed numbers"
    assert TopicDetector().label_for("um so yeah") is None


def test_reset_restores_baseline():
    detector = TopicDetector()
    feed(detector, _budget_baseline())
    detector.reset()
    decision = detector.evaluate(make_segment("The budget numbers look fine.", 3.0), [])
    assert decision.signals == ["baseline"]
