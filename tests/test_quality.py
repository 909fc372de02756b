from ingest.core.quality import DEFAULT_QUALITY_THRESHOLD, evaluate_candidate_quality


def test_action_title_passes_without_flags() -> None:
    result = evaluate_candidate_quality("Call your grandmother this weekend", "A short chat goes a long way.")
    assert result.passed
    assert result.flags == []
    assert result.score == 1.0
    assert result.threshold == DEFAULT_QUALITY_THRESHOLD


def test_non_idea_pattern_always_fails() -> None:
    result = evaluate_candidate_quality("Read our privacy policy", threshold=0.0)
    assert not result.passed
    assert "non_idea_pattern" in result.flags


def test_short_question_title_collects_penalties() -> None:
    result = evaluate_candidate_quality("Why?")
    assert not result.passed
    assert {"title_too_short", "title_not_actionable_length", "title_question_form", "weak_action_start"} <= set(
        result.flags
    )
    assert result.score == 0.0


def test_evaluation_is_deterministic() -> None:
    first = evaluate_candidate_quality("Bring snacks to the team meeting", "Everyone loves a treat.")
    second = evaluate_candidate_quality("Bring snacks to the team meeting", "Everyone loves a treat.")
    assert first == second


def test_threshold_controls_pass_for_borderline_titles() -> None:
    title = "Neighbors who share tools"
    lenient = evaluate_candidate_quality(title, threshold=0.5)
    strict = evaluate_candidate_quality(title, threshold=0.9)
    assert "weak_action_start" in lenient.flags
    assert lenient.score == 0.7
    assert lenient.passed
    assert not strict.passed
