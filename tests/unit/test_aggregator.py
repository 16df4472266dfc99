import pytest
from fakes import three_backends

from mcp_router.routing.aggregator import aggregate_hits
from mcp_router.types import SearchHit


def _hit(backend_id: str, score: float, text: str = "") -> SearchHit:
    return SearchHit(
        backend_id=backend_id,
        backend_name=backend_id.title(),
        score=score,
        matched_text=text or f"{backend_id}-{score}",
    )


def test_candidate_score_is_mean_of_its_hits() -> None:
    hits = [
        _hit("weather", 0.9),
        _hit("calculator", 0.4),
        _hit("weather", 0.5),
        _hit("calendar", 0.3),
        _hit("calculator", 0.2),
        _hit("weather", 0.1),
    ]

    candidates = aggregate_hits(hits, three_backends())

    by_id = {candidate.backend_id: candidate for candidate in candidates}
    for backend_id, candidate in by_id.items():
        scores = [hit.score for hit in hits if hit.backend_id == backend_id]
        assert candidate.score == pytest.approx(sum(scores) / len(scores))


def test_consistent_weak_matches_outrank_one_strong_match() -> None:
    hits = [
        _hit("weather", 0.9),
        _hit("calculator", 0.6),
        _hit("calculator", 0.6),
        _hit("weather", 0.1),
    ]

    candidates = aggregate_hits(hits, three_backends())

    assert [candidate.backend_id for candidate in candidates] == ["calculator", "weather"]


def test_candidates_carry_two_best_snippets_and_descriptor_fields() -> None:
    hits = [
        _hit("calculator", 0.3, "low"),
        _hit("calculator", 0.8, "best"),
        _hit("calculator", 0.5, "middle"),
    ]

    [candidate] = aggregate_hits(hits, three_backends())

    assert candidate.snippets == ["best", "middle"]
    assert candidate.backend_name == "Calculator"
    assert candidate.capabilities == ["arithmetic", "addition", "multiplication"]
    assert "Arithmetic" in candidate.description


def test_ties_keep_first_appearance_order() -> None:
    hits = [_hit("calendar", 0.5), _hit("weather", 0.5), _hit("calculator", 0.5)]

    candidates = aggregate_hits(hits, three_backends())

    assert [candidate.backend_id for candidate in candidates] == [
        "calendar",
        "weather",
        "calculator",
    ]
    assert candidates == aggregate_hits(hits, three_backends())


def test_unconfigured_backends_are_dropped() -> None:
    candidates = aggregate_hits([_hit("ghost", 0.99), _hit("weather", 0.2)], three_backends())

    assert [candidate.backend_id for candidate in candidates] == ["weather"]
    assert aggregate_hits([], three_backends()) == []
