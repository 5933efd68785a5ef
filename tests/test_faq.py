"""Tests for the FAQ knowledge base search."""

from __future__ import annotations

from clinic_agent.models import FaqEntry
from clinic_agent.tools.faq import search_faq


class TestSearchFaq:
    def test_search_opening_hours(self, session, clinic):
        results = search_faq(session, "what are your opening hours")
        assert results[0].question == "What are your opening hours?"

    def test_higher_score_ranks_first(self, session, clinic):
        results = search_faq(session, "insurance plans")
        assert results[0].question == "Do you accept dental insurance plans?"

    def test_ties_follow_display_order(self, session, clinic):
        results = search_faq(session, "dental plans")
        assert [r.order for r in results] == [1, 3]

    def test_category_filter_is_case_insensitive(self, session, clinic):
        results = search_faq(session, "dental plans", category="PAYMENT")
        assert {r.category for r in results} == {"payment"}

    def test_short_query_matches_as_phrase(self, session, clinic):
        results = search_faq(session, "pix")
        assert len(results) == 1
        assert results[0].order == 1

    def test_no_match_returns_empty(self, session, clinic):
        assert search_faq(session, "xyz123 completely unrelated") == []

    def test_blank_query_returns_empty(self, session, clinic):
        assert search_faq(session, "   ") == []

    def test_inactive_entries_are_hidden(self, session, clinic):
        session.add(FaqEntry(question="Old hours?", answer="Opening hours changed", active=False))
        session.commit()
        questions = [r.question for r in search_faq(session, "opening hours")]
        assert "Old hours?" not in questions

    def test_results_are_capped(self, session, clinic):
        for i in range(5):
            session.add(FaqEntry(question=f"Parking question {i}", answer="Parking nearby", order=10 + i))
        session.commit()
        assert len(search_faq(session, "parking")) == 3
