import logging
import threading
import time
from typing import Optional, List, Dict, Callable

from schema import (
    Problem,
    UnclearPath,
    Resolution,
    SearchResult,
    SessionState,
    DecisionEvent,
    DecisionView,
    Language,
    User,
    ActivityLog,
    Config,
    KnowledgeBaseError,
    NotFoundError,
    ValidationError,
    localize,
)
from redis_manager import init_redis
from monitoring import init_monitoring, MonitoringDashboard
from resolution_matrix import ResolutionMatrix, resolve_clear, resolve_unclear
from decision_engine import DecisionEngine, SessionManager
from ranking import SearchEngine, DebouncedSearcher
from audit_log import ActivityLogStore

logger = logging.getLogger(__name__)


# Các thao tác editor được phép gọi qua mutate_unclear_path
MATRIX_OPERATIONS = (
    "add_primary_option",
    "add_secondary_option",
    "update_option",
    "remove_option",
    "generate_mappings",
    "update_mapping",
    "add_instruction",
    "update_instruction",
    "remove_instruction",
    "reorder",
)


class KnowledgeBasePipeline:
    def __init__(
        self,
        knowledge_base,
        session_manager: SessionManager = None,
        monitoring: MonitoringDashboard = None,
        copy_text: Callable[[str], None] = None,
        search_delay_ms: int = Config.SEARCH_DEBOUNCE_MS
    ):
        """
        Wire the decision engine, search and session storage around one knowledge base.

        Args:
            knowledge_base: KnowledgeBase (taxonomy read API + editor mutations)
            session_manager: SessionState storage; in-memory if omitted
            monitoring: Optional monitoring dashboard
            copy_text: Clipboard capability used by copy_script
            search_delay_ms: Debounce delay for search()
        """
        self.kb = knowledge_base
        self.decision_engine = DecisionEngine()
        self.session_manager = session_manager or SessionManager()
        self.monitoring = monitoring
        self.copy_text = copy_text

        self.search_engine = SearchEngine(knowledge_base)
        self.search_delay_ms = search_delay_ms
        self.searcher = self.create_searcher()

        # problem_id -> ResolutionMatrix; một lock cho mỗi UnclearPath
        self._matrices: Dict[str, ResolutionMatrix] = {}
        self._matrices_lock = threading.Lock()

    # ==================== Resolution ====================

    def resolve_clear(self, problem_id: str, language: Language = Config.DEFAULT_LANGUAGE) -> Resolution:
        problem = self.kb.get_problem(problem_id)
        resolution = resolve_clear(problem, language)
        self._record_resolution("clear", resolution)
        return resolution

    def resolve_unclear(
        self,
        problem_id: str,
        primary_id: str,
        secondary_id: str,
        language: Language = Config.DEFAULT_LANGUAGE
    ) -> Resolution:
        problem = self.kb.get_problem(problem_id)
        resolution = resolve_unclear(problem, primary_id, secondary_id, language)
        self._record_resolution("unclear", resolution)
        return resolution

    # ==================== Editor: resolution matrix ====================

    def mutate_unclear_path(
        self,
        problem_id: str,
        operation: str,
        actor: Optional[User] = None,
        **kwargs
    ) -> UnclearPath:
        """
        Apply one ResolutionMatrix operation to a problem's UnclearPath.

        An empty UnclearPath is attached to the problem on the first successful mutation.
        Errors leave the path unchanged and are re-raised to the caller.
        """
        if operation not in MATRIX_OPERATIONS:
            raise ValidationError(f"Unknown matrix operation: {operation}")

        problem = self.kb.get_problem(problem_id)
        matrix = self._matrix_for(problem)

        start = time.time()
        try:
            path = getattr(matrix, operation)(**kwargs)
        except KnowledgeBaseError as e:
            logger.error(f"Matrix {operation} failed on problem {problem_id}: {e}", exc_info=True)
            if self.monitoring:
                self.monitoring.record_error(type(e).__name__, str(e))
            raise

        if problem.unclear_path is None:
            problem.unclear_path = path

        changes = {"operation": operation}
        changes.update({k: str(v) for k, v in kwargs.items()})
        self.kb.touch_problem(problem_id, actor, changes)

        if self.monitoring:
            self.monitoring.record_matrix_mutation(operation)

        logger.info(
            f"Matrix {operation} on problem {problem_id}: "
            f"{len(path.primary_options)}x{len(path.secondary_options)} options, "
            f"{len(path.result_mappings)} mappings ({(time.time() - start) * 1000:.1f}ms)"
        )
        return path

    def _matrix_for(self, problem: Problem) -> ResolutionMatrix:
        with self._matrices_lock:
            matrix = self._matrices.get(problem.id)
            if matrix is None or problem.unclear_path is None or matrix.path is not problem.unclear_path:
                matrix = ResolutionMatrix(problem.unclear_path)
                self._matrices[problem.id] = matrix
            return matrix

    # ==================== Agent sessions ====================

    def start_session(
        self,
        session_id: str,
        problem_id: str,
        language: Language = Config.DEFAULT_LANGUAGE
    ) -> DecisionView:
        problem = self.kb.get_problem(problem_id)
        state = self.decision_engine.start(problem)
        self.session_manager.save_state(session_id, state)

        if self.monitoring:
            self.monitoring.record_session_start(problem_id)

        logger.info(f"Session {session_id} started on problem {problem_id}")
        return self.decision_engine.view(problem, state, language)

    def handle_event(
        self,
        session_id: str,
        event: DecisionEvent,
        language: Language = Config.DEFAULT_LANGUAGE
    ) -> DecisionView:
        """Apply one agent event. Rejected events leave the stored session unchanged."""
        problem, state = self._load_session(session_id, language)

        try:
            new_state = self.decision_engine.transition(problem, state, event)
        except KnowledgeBaseError as e:
            logger.error(f"Session {session_id}: {event.type.value} rejected: {e}", exc_info=True)
            if self.monitoring:
                self.monitoring.record_error(type(e).__name__, str(e))
            raise

        self.session_manager.save_state(session_id, new_state)

        view = self.decision_engine.view(problem, new_state, language)
        if view.resolution is not None and new_state.stage != state.stage:
            kind = "clear" if new_state.is_clear else "unclear"
            self._record_resolution(kind, view.resolution)
        return view

    def current_view(self, session_id: str, language: Language = Config.DEFAULT_LANGUAGE) -> DecisionView:
        problem, state = self._load_session(session_id, language)
        return self.decision_engine.view(problem, state, language)

    def clear_session(self, session_id: str) -> None:
        self.session_manager.clear_state(session_id)
        logger.info(f"Session {session_id} cleared")

    def get_state(self, session_id: str) -> Optional[SessionState]:
        return self.session_manager.get_state(session_id)

    def _load_session(self, session_id: str, language: Language):
        state = self.session_manager.get_state(session_id)
        if state is None:
            raise NotFoundError(f"No active session {session_id}")
        problem = self.kb.get_problem(state.problem_id)

        reconciled = self.decision_engine.reconcile(problem, state, language)
        if reconciled != state:
            # Editor đã xóa option đang được chọn: lưu lại state đã rewind
            self.session_manager.save_state(session_id, reconciled)
            if self.monitoring:
                self.monitoring.record_stale_rewind(problem.id)
        return problem, reconciled

    # ==================== Script copy ====================

    def copy_script(
        self,
        session_id: str,
        language: Language = Config.DEFAULT_LANGUAGE,
        copy_text: Callable[[str], None] = None
    ) -> Optional[str]:
        """Send the resolved script in the selected language to the clipboard capability."""
        view = self.current_view(session_id, language)
        resolution = view.resolution
        if resolution is None or not resolution.found or resolution.script is None:
            logger.info(f"Session {session_id}: no script to copy at stage {view.stage.value}")
            return None

        script = resolution.script
        text = localize(script.content, script.content_ar, language)
        sink = copy_text or self.copy_text
        if sink is not None:
            sink(text)

        if self.monitoring:
            self.monitoring.record_script_copy()
        logger.info(f"Session {session_id}: copied script {script.id} ({language.value})")
        return text

    # ==================== Search ====================

    def create_searcher(self) -> DebouncedSearcher:
        """One searcher per input box; a newer query only cancels work from the same searcher."""
        return DebouncedSearcher(
            self.search_engine,
            delay_ms=self.search_delay_ms,
            on_results=self._on_search_results,
        )

    async def search(self, query: str, searcher: DebouncedSearcher = None) -> Optional[List[SearchResult]]:
        """Debounced search. Returns None when a newer query superseded this one."""
        results = await (searcher or self.searcher).search(query)
        if results is None and self.monitoring:
            self.monitoring.record_superseded_search()
        return results

    def search_now(self, query: str) -> List[SearchResult]:
        results = self.search_engine.rank(query)
        self._on_search_results(query, results)
        return results

    def _on_search_results(self, query: str, results: List[SearchResult]) -> None:
        if self.monitoring and query and query.strip():
            self.monitoring.record_search(query, self.search_engine.last_latency_ms, len(results))

    # ==================== Audit ====================

    def latest_updates(self, limit: int = Config.LATEST_UPDATES_LIMIT) -> List[ActivityLog]:
        if self.kb.audit is None:
            return []
        return self.kb.audit.latest(limit)

    # ==================== Helpers ====================

    def _record_resolution(self, kind: str, resolution: Resolution) -> None:
        if not resolution.found:
            logger.info(f"{kind} resolution miss: {resolution.message}")
        if self.monitoring:
            self.monitoring.record_resolution(kind, resolution.found)


def create_pipeline(
    redis_url: Optional[str] = None,
    enable_monitoring: bool = True,
    knowledge_base=None,
    copy_text: Callable[[str], None] = None,
    search_delay_ms: int = Config.SEARCH_DEBOUNCE_MS
) -> KnowledgeBasePipeline:
    from seed_data import build_knowledge_base

    # Sessions, metrics and the audit mirror share one connection pool
    redis_client = None
    redis_manager = None
    if redis_url:
        redis_manager = init_redis(redis_url)
        redis_client = redis_manager.client
        logger.info(f"Redis manager initialized (connected={redis_manager.is_connected})")

    audit = ActivityLogStore(redis_manager)
    if knowledge_base is None:
        knowledge_base = build_knowledge_base(audit)
    elif knowledge_base.audit is None:
        knowledge_base.audit = audit

    monitoring = None
    if enable_monitoring:
        monitoring = init_monitoring(redis_manager)
        logger.info("Monitoring enabled")

    return KnowledgeBasePipeline(
        knowledge_base=knowledge_base,
        session_manager=SessionManager(redis_client),
        monitoring=monitoring,
        copy_text=copy_text,
        search_delay_ms=search_delay_ms,
    )
