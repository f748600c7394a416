import json
import logging
from dataclasses import replace
from typing import Optional, Dict

from schema import (
    Problem,
    SessionState,
    DecisionEvent,
    DecisionView,
    DecisionStage,
    EventType,
    Resolution,
    Language,
    Config,
    NotFoundError,
    ValidationError,
    StaleReferenceError,
    localize,
    message,
)
from resolution_matrix import resolve_clear, resolve_unclear

logger = logging.getLogger(__name__)


# Stages before the agent has declared Clear/Unclear
PRE_RESOLUTION_STAGES = (
    DecisionStage.START,
    DecisionStage.FAQ_BROWSING,
    DecisionStage.VERIFICATION_CHECKLIST,
)

RESOLUTION_STAGES = (
    DecisionStage.CLEAR_RESOLUTION,
    DecisionStage.UNCLEAR_RESOLUTION_LOOKUP,
)


def can_finish(stage: DecisionStage) -> bool:
    # gồm cả lookup không tìm thấy mapping
    return stage in RESOLUTION_STAGES


class DecisionEngine:
    """
    Máy trạng thái cho luồng xử lý của agent trên một Problem.

    transition() là hàm thuần: (Problem, SessionState, DecisionEvent) -> SessionState mới.
    State đầu vào không bao giờ bị sửa.
    """

    def start(self, problem: Problem) -> SessionState:
        self._check_faq_levels(problem)
        return SessionState(problem_id=problem.id, stage=DecisionStage.START, faq_level=1)

    def transition(self, problem: Problem, state: SessionState, event: DecisionEvent) -> SessionState:
        if state.problem_id != problem.id:
            raise ValidationError(
                f"Session is for problem {state.problem_id}, got problem {problem.id}"
            )

        state = self.reconcile(problem, state)
        logger.debug(f"Transition: stage={state.stage.value}, event={event.type.value}, value={event.value}")

        if event.type == EventType.RESET:
            return self.start(problem)

        if state.stage == DecisionStage.DONE:
            raise ValidationError(f"Session is done; only {EventType.RESET.value} is accepted")

        handler = {
            EventType.SELECT_FAQ_LEVEL: self._on_select_faq_level,
            EventType.TOGGLE_VERIFICATION: self._on_toggle_verification,
            EventType.REQUEST_RESOLUTION: self._on_request_resolution,
            EventType.CHOOSE_CLEAR: self._on_choose_clear,
            EventType.CHOOSE_UNCLEAR: self._on_choose_unclear,
            EventType.SELECT_PRIMARY: self._on_select_primary,
            EventType.SELECT_SECONDARY: self._on_select_secondary,
            EventType.FINISH: self._on_finish,
        }.get(event.type)

        if handler is None:
            raise ValidationError(f"Unsupported event: {event.type}")

        new_state = handler(problem, state, event)
        logger.info(
            f"Decision flow {problem.id}: {state.stage.value} --{event.type.value}--> {new_state.stage.value}"
        )
        return new_state

    # ==================== Event handlers ====================

    def _on_select_faq_level(self, problem: Problem, state: SessionState, event: DecisionEvent) -> SessionState:
        level = event.value
        if not any(faq.level == level for faq in problem.faq_levels):
            raise ValidationError(f"Problem {problem.id} has no FAQ level {level}")
        return replace(
            state,
            faq_level=level,
            stage=self._advance(state.stage, DecisionStage.FAQ_BROWSING),
            notice=None,
        )

    def _on_toggle_verification(self, problem: Problem, state: SessionState, event: DecisionEvent) -> SessionState:
        step_id = event.value
        if not any(step.id == step_id for step in problem.verification_steps):
            raise NotFoundError(f"Verification step {step_id} not found on problem {problem.id}")
        if step_id in state.checked_steps:
            checked = [s for s in state.checked_steps if s != step_id]
        else:
            checked = state.checked_steps + [step_id]
        return replace(
            state,
            checked_steps=checked,
            stage=self._advance(state.stage, DecisionStage.VERIFICATION_CHECKLIST),
            notice=None,
        )

    def _on_request_resolution(self, problem: Problem, state: SessionState, event: DecisionEvent) -> SessionState:
        return replace(state, stage=self._advance(state.stage, DecisionStage.RESOLUTION_CHOICE), notice=None)

    def _on_choose_clear(self, problem: Problem, state: SessionState, event: DecisionEvent) -> SessionState:
        # Required FAQ/verification items are not enforced here
        return replace(
            state,
            is_clear=True,
            primary_option_id=None,
            secondary_option_id=None,
            stage=DecisionStage.CLEAR_RESOLUTION,
            notice=None,
        )

    def _on_choose_unclear(self, problem: Problem, state: SessionState, event: DecisionEvent) -> SessionState:
        if state.is_clear is False:
            return replace(state, notice=None)
        return replace(
            state,
            is_clear=False,
            primary_option_id=None,
            secondary_option_id=None,
            stage=DecisionStage.UNCLEAR_PRIMARY_SELECT,
            notice=None,
        )

    def _on_select_primary(self, problem: Problem, state: SessionState, event: DecisionEvent) -> SessionState:
        self._require_unclear(state)
        self._require_option(problem, event.value, primary=True)
        new_state = replace(state, primary_option_id=event.value, notice=None)
        return replace(new_state, stage=self._unclear_stage(new_state))

    def _on_select_secondary(self, problem: Problem, state: SessionState, event: DecisionEvent) -> SessionState:
        self._require_unclear(state)
        self._require_option(problem, event.value, primary=False)
        new_state = replace(state, secondary_option_id=event.value, notice=None)
        return replace(new_state, stage=self._unclear_stage(new_state))

    def _on_finish(self, problem: Problem, state: SessionState, event: DecisionEvent) -> SessionState:
        if not can_finish(state.stage):
            raise ValidationError(f"Cannot finish from stage {state.stage.value}")
        return replace(state, stage=DecisionStage.DONE, notice=None)

    # ==================== Stale references ====================

    def reconcile(
        self,
        problem: Problem,
        state: SessionState,
        language: Language = Config.DEFAULT_LANGUAGE
    ) -> SessionState:
        """
        Kiểm tra lại các option đã chọn với UnclearPath hiện tại.
        Nếu option đã bị editor xóa, đưa state về bước chọn tương ứng.
        """
        try:
            self._check_references(problem, state)
            return state
        except StaleReferenceError as e:
            logger.warning(f"Stale reference in session for problem {problem.id}: {e}")
            if e.stage == DecisionStage.UNCLEAR_PRIMARY_SELECT:
                rewound = replace(state, primary_option_id=None)
                notice = message("STALE_PRIMARY", language)
            else:
                rewound = replace(state, secondary_option_id=None)
                notice = message("STALE_SECONDARY", language)
            # Secondary may be stale as well; clear it on the same pass
            rewound = self.reconcile(problem, rewound, language)
            return replace(rewound, stage=self._unclear_stage(rewound), notice=notice)

    def _check_references(self, problem: Problem, state: SessionState) -> None:
        if state.is_clear is not False:
            return
        path = problem.unclear_path
        primary_ids = {o.id for o in path.primary_options} if path else set()
        secondary_ids = {o.id for o in path.secondary_options} if path else set()

        if state.primary_option_id and state.primary_option_id not in primary_ids:
            raise StaleReferenceError(
                f"primary option {state.primary_option_id} no longer exists",
                stage=DecisionStage.UNCLEAR_PRIMARY_SELECT,
            )
        if state.secondary_option_id and state.secondary_option_id not in secondary_ids:
            raise StaleReferenceError(
                f"secondary option {state.secondary_option_id} no longer exists",
                stage=DecisionStage.UNCLEAR_SECONDARY_SELECT,
            )

    # ==================== View ====================

    def view(
        self,
        problem: Problem,
        state: SessionState,
        language: Language = Config.DEFAULT_LANGUAGE
    ) -> DecisionView:
        """Render the current step. The resolution is looked up by id on every call."""
        state = self.reconcile(problem, state, language)

        faq_answer = None
        for faq in problem.faq_levels:
            if faq.level == state.faq_level:
                faq_answer = localize(faq.answer, faq.answer_ar, language)
                break

        checked = set(state.checked_steps)
        checklist = {step.id: step.id in checked for step in problem.verification_steps}

        resolution: Optional[Resolution] = None
        if state.is_clear is True:
            resolution = resolve_clear(problem, language)
        elif state.is_clear is False and state.primary_option_id and state.secondary_option_id:
            resolution = resolve_unclear(problem, state.primary_option_id, state.secondary_option_id, language)

        return DecisionView(
            problem_id=problem.id,
            stage=state.stage,
            faq_level=state.faq_level,
            faq_answer=faq_answer,
            checklist=checklist,
            resolution=resolution,
            notice=state.notice,
        )

    # ==================== Helpers ====================

    @staticmethod
    def _advance(current: DecisionStage, target: DecisionStage) -> DecisionStage:
        # FAQ/checklist activity never rolls back a resolution already chosen
        if current in PRE_RESOLUTION_STAGES or current == DecisionStage.RESOLUTION_CHOICE:
            order = list(PRE_RESOLUTION_STAGES) + [DecisionStage.RESOLUTION_CHOICE]
            return target if order.index(target) >= order.index(current) else current
        return current

    @staticmethod
    def _unclear_stage(state: SessionState) -> DecisionStage:
        if state.primary_option_id and state.secondary_option_id:
            return DecisionStage.UNCLEAR_RESOLUTION_LOOKUP
        if state.primary_option_id:
            return DecisionStage.UNCLEAR_SECONDARY_SELECT
        return DecisionStage.UNCLEAR_PRIMARY_SELECT

    @staticmethod
    def _require_unclear(state: SessionState) -> None:
        if state.is_clear is not False:
            raise ValidationError("Options can only be selected after marking the issue Unclear")

    @staticmethod
    def _require_option(problem: Problem, option_id: str, primary: bool) -> None:
        path = problem.unclear_path
        options = []
        if path is not None:
            options = path.primary_options if primary else path.secondary_options
        if not any(o.id == option_id for o in options):
            axis = "primary" if primary else "secondary"
            raise NotFoundError(f"{axis} option {option_id} not found on problem {problem.id}")

    @staticmethod
    def _check_faq_levels(problem: Problem) -> None:
        levels = [faq.level for faq in problem.faq_levels]
        if levels != list(range(1, len(levels) + 1)):
            logger.warning(f"Problem {problem.id} has non-contiguous FAQ levels: {levels}")


class SessionManager:
    """Lưu SessionState theo session_id: Redis nếu có, nếu không thì bộ nhớ trong."""

    def __init__(self, redis_client=None):
        self.redis = redis_client
        self._redis_available = False
        self._local_store: Dict[str, str] = {}
        self.ttl = Config.SESSION_TTL_SECONDS
        self.prefix = Config.SESSION_KEY_PREFIX

        if self.redis:
            try:
                self.redis.ping()
                self._redis_available = True
            except Exception:
                self._redis_available = False

    def get_state(self, session_id: str) -> Optional[SessionState]:
        key = f"{self.prefix}{session_id}"
        raw = None
        if self._redis_available:
            try:
                raw = self.redis.get(key)
            except Exception as e:
                logger.warning(f"Redis get_state failed: {e}, using in-memory")
                self._redis_available = False
        if raw is None:
            raw = self._local_store.get(key)
        if raw is None:
            return None
        return SessionState.from_dict(json.loads(raw))

    def save_state(self, session_id: str, state: SessionState) -> None:
        key = f"{self.prefix}{session_id}"
        payload = json.dumps(state.to_dict())
        if self._redis_available:
            try:
                self.redis.setex(key, self.ttl, payload)
                return
            except Exception as e:
                logger.warning(f"Redis save_state failed: {e}, using in-memory")
                self._redis_available = False
        self._local_store[key] = payload

    def clear_state(self, session_id: str) -> None:
        key = f"{self.prefix}{session_id}"
        if self._redis_available:
            try:
                self.redis.delete(key)
            except Exception:
                self._redis_available = False
        self._local_store.pop(key, None)
