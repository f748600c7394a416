"""
Test Search / Ranking
=====================

Substring scoring, tie-break, giới hạn kết quả và debounce có hủy truy vấn cũ.
"""

import sys
import os
import asyncio

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from schema import (
    Category,
    Scenario,
    Problem,
    FAQLevel,
    Script,
    SearchResult,
    SearchResultType,
)
from taxonomy import KnowledgeBase
from ranking import SearchIndex, SearchEngine, SubstringScorer, DebouncedSearcher
from seed_data import build_knowledge_base


def minimal_kb() -> KnowledgeBase:
    kb = KnowledgeBase()
    kb.add_category(Category(id="c1", name="Customer Side", name_ar="",
                             description="Customer-related issues and resolutions"))
    kb.add_scenario(Scenario(id="s1", name="Order Issue", name_ar="", category_id="c1"))
    return kb


# ==================== Scoring ====================

def test_payment_query_returns_problem_and_excludes_unrelated_script():
    engine = SearchEngine(build_knowledge_base())

    results = engine.rank("payment")

    titles = [r.title for r in results]
    problem = next(r for r in results if r.title == "Customer unable to complete payment")
    assert problem.type == SearchResultType.PROBLEM
    assert problem.relevance >= 10
    assert "Order Cancellation Request" not in titles


def test_title_and_content_weights():
    scorer = SubstringScorer()
    document = SearchResult(id="d1", type=SearchResultType.SCRIPT, title="Refund Policy",
                            content="Refunds take 3-5 business days", category="General SOP")

    assert scorer.score("refund", document).relevance == 15
    assert scorer.score("policy", document).relevance == 10
    assert scorer.score("business", document).relevance == 5
    assert scorer.score("delivery", document) is None


def test_match_is_case_insensitive():
    scorer = SubstringScorer()
    document = SearchResult(id="d1", type=SearchResultType.PROBLEM, title="Account LOGIN issues",
                            content="", category="Customer Side")
    assert scorer.score("Login", document).relevance == 10


def test_highlights_are_title_plus_distinct_tokens():
    scorer = SubstringScorer()
    document = SearchResult(
        id="d1", type=SearchResultType.SCRIPT, title="Card declined",
        content="card Card card-holder cards credit-card", category="",
    )

    result = scorer.score("card", document)

    assert result.highlights[0] == "Card declined"
    assert result.highlights[1:] == ["card", "Card", "card-holder"]


def test_empty_query_returns_nothing():
    engine = SearchEngine(build_knowledge_base())
    assert engine.rank("") == []
    assert engine.rank("   ") == []


def test_index_covers_problems_scripts_and_categories():
    kb = build_knowledge_base()
    index = SearchIndex.build(kb.list_categories(active_only=False), kb.list_problems(), kb.list_scripts())

    types = [d.type for d in index.documents]
    assert types.count(SearchResultType.PROBLEM) == 3
    assert types.count(SearchResultType.SCRIPT) == 2
    assert types.count(SearchResultType.CATEGORY) == 4

    problem = next(d for d in index.documents if d.id == "1" and d.type == SearchResultType.PROBLEM)
    assert problem.category == "Customer Side"
    assert "Is the payment method valid?" in problem.content
    category = next(d for d in index.documents if d.type == SearchResultType.CATEGORY)
    assert category.category == "Category"


# ==================== Ordering ====================

def test_ties_break_by_title_then_type():
    kb = minimal_kb()
    kb.add_problem(Problem(id="p2", title="Beta refund", title_ar="", category_id="c1", scenario_id="s1"))
    kb.add_problem(Problem(id="p1", title="Alpha refund", title_ar="", category_id="c1", scenario_id="s1"))
    kb.add_script(Script(id="x1", title="alpha refund", title_ar="", content=""))

    results = SearchEngine(kb).rank("refund")

    assert [(r.title, r.type) for r in results] == [
        ("Alpha refund", SearchResultType.PROBLEM),
        ("alpha refund", SearchResultType.SCRIPT),
        ("Beta refund", SearchResultType.PROBLEM),
    ]


def test_results_sorted_by_relevance_and_capped():
    kb = minimal_kb()
    for i in range(12):
        kb.add_script(Script(id=f"x{i:02d}", title=f"Script {i:02d}", title_ar="", content="refund steps"))
    kb.add_problem(Problem(
        id="p1", title="Refund not received", title_ar="", category_id="c1", scenario_id="s1",
        faq_levels=[FAQLevel(id="f1", level=1, question="Was the refund issued?")],
    ))

    results = SearchEngine(kb).rank("refund")

    assert len(results) == 10
    assert results[0].id == "p1"
    assert results[0].relevance == 15
    assert all(a.relevance >= b.relevance for a, b in zip(results, results[1:]))


def test_index_rebuilds_after_knowledge_base_change():
    kb = minimal_kb()
    engine = SearchEngine(kb)
    assert engine.rank("wallet") == []

    kb.add_script(Script(id="x1", title="Wallet top-up failed", title_ar="", content=""))

    assert [r.id for r in engine.rank("wallet")] == ["x1"]


# ==================== Debounced search ====================

def test_empty_query_resolves_immediately_without_pending_work():
    async def scenario():
        searcher = DebouncedSearcher(SearchEngine(build_knowledge_base()), delay_ms=50)
        future = searcher.submit("")
        assert future.done()
        assert future.result() == []
        assert not searcher.has_pending
        assert await searcher.search("   ") == []
        assert not searcher.has_pending

    asyncio.run(scenario())


def test_newer_query_supersedes_older_one():
    delivered = []

    async def scenario():
        searcher = DebouncedSearcher(
            SearchEngine(build_knowledge_base()),
            delay_ms=20,
            on_results=lambda query, results: delivered.append(query),
        )
        first = asyncio.ensure_future(searcher.search("a"))
        await asyncio.sleep(0)
        second = await searcher.search("ab")
        first_result = await first
        # Không có kết quả nào cho "a" được giao muộn
        await asyncio.sleep(0.05)
        return first_result, second, searcher

    first_result, second, searcher = asyncio.run(scenario())

    assert first_result is None
    assert second is not None
    assert delivered == ["ab"]
    assert searcher.superseded_count == 1


def test_empty_query_cancels_pending_search():
    delivered = []

    async def scenario():
        searcher = DebouncedSearcher(
            SearchEngine(build_knowledge_base()),
            delay_ms=20,
            on_results=lambda query, results: delivered.append(query),
        )
        pending = searcher.submit("payment")
        searcher.submit("")
        await asyncio.sleep(0.05)
        return pending, searcher

    pending, searcher = asyncio.run(scenario())

    assert pending.cancelled()
    assert delivered == [""]
    assert not searcher.has_pending


def test_cancel_drops_pending_search():
    async def scenario():
        searcher = DebouncedSearcher(SearchEngine(build_knowledge_base()), delay_ms=20)
        pending = searcher.submit("payment")
        searcher.cancel()
        await asyncio.sleep(0.05)
        return pending

    assert asyncio.run(scenario()).cancelled()
