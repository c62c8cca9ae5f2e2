import pytest

from docready.reasoner import CrossPageReasoner
from conftest import make_page, worksheet


def _resp(qid, earned, possible=10, correct=None, text="", answer="a", **extra):
    if correct is None:
        correct = True if earned == possible else "partial" if earned else False
    return {
        "questionId": qid,
        "questionText": text,
        "studentAnswer": answer,
        "isCorrect": correct,
        "score": {"earned": earned, "possible": possible, "percentage": earned / possible},
        **extra,
    }


def test_empty_input():
    assert CrossPageReasoner().synthesize([]) is None


def test_merge_orders_and_links_continuations():
    p1 = make_page(1, worksheet(50, [_resp("Q3", 10, text="Long division"), _resp("Q1", 0)]))
    p2 = make_page(2, worksheet(60, [_resp("Q2", 5), _resp("Q3", 10, text="Long division", answer="remainder 2")]))
    merged = CrossPageReasoner.merge_responses([p1, p2])
    assert [m["questionId"] for m in merged] == ["Q1", "Q2", "Q3"]
    q3 = merged[2]
    assert q3["source_page_id"] == 1 and q3["page_number"] == 1
    assert q3["continued_from"] == [{"page_id": 2, "additional_answer": "remainder 2"}]


def test_progression_trends():
    reasoner = CrossPageReasoner()
    pages = [make_page(i, worksheet(s, [])) for i, s in enumerate([50, 55, 80, 90], start=1)]
    out = reasoner.progression(pages)
    assert out["trend"] == "improving"
    assert out["first_half_average"] == 52.5
    assert out["second_half_average"] == 85.0
    assert out["peak"] == {"page": 4, "score": 90.0}
    assert out["lowest"] == {"page": 1, "score": 50.0}

    declining = [make_page(i, worksheet(s, [])) for i, s in enumerate([90, 70, 60], start=1)]
    assert reasoner.progression(declining)["trend"] == "declining"
    steady = [make_page(i, worksheet(s, [])) for i, s in enumerate([70, 75], start=1)]
    assert reasoner.progression(steady)["trend"] == "stable"


def test_progression_needs_two_scores():
    page = make_page(1, {"responses": [], "overallAssessment": {"score": "n/a"}})
    assert CrossPageReasoner().progression([page, make_page(2, worksheet(70, []))])["trend"] == "insufficient_data"


def test_concept_mastery_levels():
    responses = [
        _resp("Q1", 10, conceptsAssessed=["fractions"]),
        _resp("Q2", 10, conceptsAssessed=["fractions", "decimals"]),
        _resp("Q3", 0, conceptsAssessed=["decimals"]),
        {"questionId": "Q4", "isCorrect": "partial", "conceptsAssessed": ["ratios"]},
    ]
    mastery = CrossPageReasoner.concept_mastery([make_page(1, worksheet(60, responses))])
    levels = {m["concept"]: m["level"] for m in mastery}
    assert levels == {"fractions": "mastered", "decimals": "developing", "ratios": "developing"}
    assert mastery[0]["average_score"] <= mastery[-1]["average_score"]


def test_overall_assessment_totals():
    pages = [
        make_page(1, worksheet(0, [_resp("Q1", 10), _resp("Q2", 5)])),
        make_page(2, worksheet(0, [_resp("Q3", 0), {"questionId": "Q4", "score": "bad"}])),
    ]
    out = CrossPageReasoner.overall_assessment(pages)
    assert out["earned"] == 15 and out["possible"] == 30
    assert out["score"] == 50.0
    assert out["grade"] == "F"
    assert (out["correct_count"], out["partial_count"], out["incorrect_count"]) == (1, 1, 1)


def test_overall_assessment_without_scores():
    out = CrossPageReasoner.overall_assessment([make_page(1, worksheet(0, []))])
    assert out == {"score": None, "grade": None, "message": "Unable to calculate"}


def test_patterns_and_recommendations():
    errors = [_resp(f"Q{i}", 0, errorType="calculation") for i in range(1, 5)]
    skipped = [_resp("B1", 0, answer=""), _resp("B2", 0, answer=" ")]
    pages = [
        make_page(1, worksheet(90, errors[:2] + skipped, strengths=["Shows work"])),
        make_page(2, worksheet(40, errors[2:], strengths=["shows work "])),
    ]
    synthesis = CrossPageReasoner().synthesize(pages)
    kinds = {p["type"]: p for p in synthesis["patterns"]}
    assert kinds["recurring_error"]["count"] == 4
    assert kinds["recurring_error"]["severity"] == "high"
    assert kinds["skipped_questions"]["section"] == "B"
    assert kinds["consistent_strength"]["description"] == "shows work"

    recs = synthesis["recommendations"]
    priorities = [r["priority"] for r in recs]
    assert priorities == sorted(priorities, key=["high", "medium", "positive", "low"].index)
    categories = {r["category"] for r in recs}
    assert {"error_correction", "study_habits", "reinforcement"} <= categories
    assert synthesis["page_count"] == 2


def test_patterns_respect_min_count():
    page = make_page(1, worksheet(80, [_resp("Q1", 0, errorType="sign")]))
    assert CrossPageReasoner().patterns([page]) == []
    assert CrossPageReasoner({"pattern_min_count": 1}).patterns([page])[0]["error_type"] == "sign"


def test_weak_concepts_become_high_priority():
    responses = [_resp("Q1", 0, conceptsAssessed=["algebra"]), _resp("Q2", 10, conceptsAssessed=["geometry"])]
    synthesis = CrossPageReasoner().synthesize([make_page(1, worksheet(50, responses))])
    assert synthesis["recommendations"][0]["category"] == "concept_review"
    assert synthesis["recommendations"][0]["message"] == "Focus on algebra: 0% mastery"
    assert synthesis["progression"]["trend"] == "insufficient_data"
    assert synthesis["overall_assessment"]["score"] == pytest.approx(50.0)
