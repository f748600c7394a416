import asyncio
import logging
import time
from typing import List, Dict, Optional, Callable, Iterable

from schema import (
    Category,
    Problem,
    Script,
    SearchResult,
    SearchResultType,
    Config,
)

logger = logging.getLogger(__name__)


# Secondary sort key for equal relevance (after title)
TYPE_ORDER: Dict[SearchResultType, int] = {
    SearchResultType.PROBLEM: 0,
    SearchResultType.SCRIPT: 1,
    SearchResultType.CATEGORY: 2,
    SearchResultType.SCENARIO: 3,
}


class SearchIndex:
    """Flat corpus of Problems, Scripts and Categories."""

    def __init__(self, documents: List[SearchResult]):
        self.documents = documents

    @classmethod
    def build(
        cls,
        categories: Iterable[Category],
        problems: Iterable[Problem],
        scripts: Iterable[Script]
    ) -> "SearchIndex":
        categories = list(categories)
        category_names = {c.id: c.name for c in categories}
        documents: List[SearchResult] = []

        for problem in problems:
            documents.append(SearchResult(
                id=problem.id,
                type=SearchResultType.PROBLEM,
                title=problem.title,
                content=" ".join(f"{faq.question} {faq.answer}" for faq in problem.faq_levels),
                category=category_names.get(problem.category_id, ""),
            ))

        for script in scripts:
            documents.append(SearchResult(
                id=script.id,
                type=SearchResultType.SCRIPT,
                title=script.title,
                content=script.content,
                category=script.category,
            ))

        for category in categories:
            documents.append(SearchResult(
                id=category.id,
                type=SearchResultType.CATEGORY,
                title=category.name,
                content=category.description,
                category=Config.CATEGORY_DOCUMENT_LABEL,
            ))

        logger.info(f"Search index built: {len(documents)} documents")
        return cls(documents)


class SubstringScorer:
    """Case-insensitive substring matching, không tách token hay stemming."""

    def __init__(self):
        self.title_weight = Config.TITLE_MATCH_WEIGHT
        self.content_weight = Config.CONTENT_MATCH_WEIGHT
        self.max_highlights = Config.SEARCH_MAX_CONTENT_HIGHLIGHTS

    def score(self, query: str, document: SearchResult) -> Optional[SearchResult]:
        needle = query.lower()
        title_match = needle in document.title.lower()
        content_match = needle in document.content.lower()
        if not title_match and not content_match:
            return None

        relevance = self.title_weight * int(title_match) + self.content_weight * int(content_match)

        highlights: List[str] = []
        if title_match:
            highlights.append(document.title)
        if content_match:
            tokens: List[str] = []
            for word in document.content.split():
                if needle in word.lower() and word not in tokens:
                    tokens.append(word)
                    if len(tokens) == self.max_highlights:
                        break
            highlights.extend(t for t in tokens if t not in highlights)

        return SearchResult(
            id=document.id,
            type=document.type,
            title=document.title,
            content=document.content,
            category=document.category,
            relevance=relevance,
            highlights=highlights,
        )


class SearchEngine:
    """Xếp hạng tài liệu theo query; index được build lại khi knowledge base thay đổi."""

    def __init__(self, knowledge_base, max_results: int = Config.SEARCH_MAX_RESULTS):
        self.knowledge_base = knowledge_base
        self.scorer = SubstringScorer()
        self.max_results = max_results
        self._index: Optional[SearchIndex] = None
        self._index_version: Optional[int] = None
        self.last_latency_ms = 0.0

    @property
    def index(self) -> SearchIndex:
        version = self.knowledge_base.version
        if self._index is None or self._index_version != version:
            self._index = SearchIndex.build(
                self.knowledge_base.list_categories(active_only=False),
                self.knowledge_base.list_problems(),
                self.knowledge_base.list_scripts(),
            )
            self._index_version = version
        return self._index

    def rank(self, query: str) -> List[SearchResult]:
        if not query or not query.strip():
            return []

        start = time.time()
        scored = []
        for document in self.index.documents:
            result = self.scorer.score(query, document)
            if result is not None:
                scored.append(result)

        scored.sort(key=self._sort_key)
        results = scored[:self.max_results]

        self.last_latency_ms = (time.time() - start) * 1000
        logger.info(
            f"Search '{query[:50]}': {len(scored)} matched, {len(results)} returned "
            f"in {self.last_latency_ms:.1f}ms"
        )
        return results

    @staticmethod
    def _sort_key(result: SearchResult):
        return (-result.relevance, result.title.casefold(), TYPE_ORDER[result.type], result.id)


class DebouncedSearcher:
    """
    Debounce + hủy truy vấn cũ.

    Mỗi submit() hủy đánh giá đang chờ; chỉ kết quả của truy vấn mới nhất
    được giao cho caller. Query rỗng trả [] ngay, không tạo tác vụ async.
    """

    def __init__(
        self,
        engine: SearchEngine,
        delay_ms: int = Config.SEARCH_DEBOUNCE_MS,
        on_results: Optional[Callable[[str, List[SearchResult]], None]] = None
    ):
        self.engine = engine
        self.delay = delay_ms / 1000
        self.on_results = on_results
        self._pending: Optional[asyncio.Task] = None
        self._generation = 0
        self.superseded_count = 0

    @property
    def has_pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def submit(self, query: str) -> "asyncio.Future[List[SearchResult]]":
        loop = asyncio.get_running_loop()
        self._generation += 1
        self._cancel_pending()

        if not query or not query.strip():
            future = loop.create_future()
            future.set_result([])
            if self.on_results:
                self.on_results(query, [])
            return future

        self._pending = loop.create_task(self._evaluate(query, self._generation))
        return self._pending

    async def search(self, query: str) -> Optional[List[SearchResult]]:
        """Returns the results, or None when a newer query superseded this one."""
        future = self.submit(query)
        await asyncio.wait({future})
        if future.cancelled():
            return None
        return future.result()

    def cancel(self) -> None:
        self._generation += 1
        self._cancel_pending()

    async def _evaluate(self, query: str, generation: int) -> List[SearchResult]:
        await asyncio.sleep(self.delay)
        results = self.engine.rank(query)
        if generation != self._generation:
            # Bị thay thế trong lúc đang tính: không được giao kết quả
            raise asyncio.CancelledError()
        if self.on_results:
            self.on_results(query, results)
        return results

    def _cancel_pending(self) -> None:
        if self.has_pending:
            self._pending.cancel()
            self.superseded_count += 1
            logger.debug("Pending search superseded")
        self._pending = None
