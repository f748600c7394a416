"""
Test Decision Engine
====================

Luồng FAQ -> checklist -> Clear/Unclear -> resolution trên dữ liệu mẫu,
reconcile khi editor xóa option, và lưu SessionState.
"""

import sys
import os
import copy

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from schema import (
    DecisionEvent,
    DecisionStage,
    EventType,
    Language,
    SessionState,
    NotFoundError,
    ValidationError,
    message,
)
from resolution_matrix import ResolutionMatrix
from decision_engine import DecisionEngine, SessionManager, can_finish
from seed_data import build_knowledge_base, PAYMENT_PROBLEM_ID


@pytest.fixture
def problem():
    return build_knowledge_base().get_problem(PAYMENT_PROBLEM_ID)


@pytest.fixture
def engine():
    return DecisionEngine()


def run(engine, problem, state, *events):
    for event_type, value in events:
        state = engine.transition(problem, state, DecisionEvent(event_type, value))
    return state


# ==================== FAQ & checklist ====================

def test_start_state(engine, problem):
    state = engine.start(problem)
    assert state.stage == DecisionStage.START
    assert state.faq_level == 1
    assert state.checked_steps == []
    assert state.is_clear is None


def test_faq_levels_selectable_in_any_order(engine, problem):
    state = run(engine, problem, engine.start(problem),
                (EventType.SELECT_FAQ_LEVEL, 2),
                (EventType.SELECT_FAQ_LEVEL, 1))
    assert state.stage == DecisionStage.FAQ_BROWSING
    assert state.faq_level == 1


def test_unknown_faq_level_rejected(engine, problem):
    with pytest.raises(ValidationError):
        run(engine, problem, engine.start(problem), (EventType.SELECT_FAQ_LEVEL, 7))


def test_verification_toggle_is_set_membership(engine, problem):
    state = run(engine, problem, engine.start(problem),
                (EventType.TOGGLE_VERIFICATION, "1-v2"),
                (EventType.TOGGLE_VERIFICATION, "1-v1"),
                (EventType.TOGGLE_VERIFICATION, "1-v2"))
    assert state.stage == DecisionStage.VERIFICATION_CHECKLIST
    assert state.checked_steps == ["1-v1"]


def test_unknown_verification_step_raises_not_found(engine, problem):
    with pytest.raises(NotFoundError):
        run(engine, problem, engine.start(problem), (EventType.TOGGLE_VERIFICATION, "9-v9"))


def test_transition_does_not_mutate_input(engine, problem):
    state = engine.start(problem)
    snapshot = copy.deepcopy(state)

    run(engine, problem, state,
        (EventType.TOGGLE_VERIFICATION, "1-v1"),
        (EventType.CHOOSE_UNCLEAR, None))

    assert state == snapshot


def test_transition_rejects_state_for_other_problem(engine, problem):
    state = SessionState(problem_id="2")
    with pytest.raises(ValidationError):
        engine.transition(problem, state, DecisionEvent(EventType.REQUEST_RESOLUTION))


# ==================== Clear branch ====================

def test_required_items_never_block_clear(engine, problem):
    assert any(f.is_required for f in problem.faq_levels)

    state = run(engine, problem, engine.start(problem), (EventType.CHOOSE_CLEAR, None))

    assert state.stage == DecisionStage.CLEAR_RESOLUTION
    assert state.is_clear is True


def test_clear_flow_renders_clear_path(engine, problem):
    state = run(engine, problem, engine.start(problem),
                (EventType.TOGGLE_VERIFICATION, "1-v1"),
                (EventType.REQUEST_RESOLUTION, None),
                (EventType.CHOOSE_CLEAR, None))

    view = engine.view(problem, state)

    assert view.resolution.found
    assert len(view.resolution.instructions) == 2
    assert view.resolution.script.title == "Payment Failed - Card Declined"
    assert view.checklist == {"1-v1": True, "1-v2": False}


def test_faq_activity_does_not_rewind_resolution(engine, problem):
    state = run(engine, problem, engine.start(problem),
                (EventType.CHOOSE_CLEAR, None),
                (EventType.SELECT_FAQ_LEVEL, 2),
                (EventType.TOGGLE_VERIFICATION, "1-v1"))
    assert state.stage == DecisionStage.CLEAR_RESOLUTION


# ==================== Unclear branch ====================

def test_unclear_selection_is_order_insensitive(engine, problem):
    state = run(engine, problem, engine.start(problem),
                (EventType.CHOOSE_UNCLEAR, None),
                (EventType.SELECT_SECONDARY, "secondary-urgent"))
    assert state.stage == DecisionStage.UNCLEAR_PRIMARY_SELECT

    state = run(engine, problem, state, (EventType.SELECT_PRIMARY, "primary-payment"))

    assert state.stage == DecisionStage.UNCLEAR_RESOLUTION_LOOKUP
    view = engine.view(problem, state)
    assert view.resolution.found
    assert len(view.resolution.instructions) == 3


def test_unconfigured_pair_shows_neutral_message(engine, problem):
    state = run(engine, problem, engine.start(problem),
                (EventType.CHOOSE_UNCLEAR, None),
                (EventType.SELECT_PRIMARY, "primary-other"),
                (EventType.SELECT_SECONDARY, "secondary-standard"))

    view = engine.view(problem, state, Language.AR)

    assert view.resolution is not None
    assert not view.resolution.found
    assert view.resolution.message == message("NO_CLASSIFICATION", Language.AR)


def test_selecting_option_requires_unclear(engine, problem):
    with pytest.raises(ValidationError):
        run(engine, problem, engine.start(problem), (EventType.SELECT_PRIMARY, "primary-payment"))
    with pytest.raises(ValidationError):
        run(engine, problem, engine.start(problem),
            (EventType.CHOOSE_CLEAR, None),
            (EventType.SELECT_SECONDARY, "secondary-urgent"))


def test_selecting_unknown_option_raises_not_found(engine, problem):
    with pytest.raises(NotFoundError):
        run(engine, problem, engine.start(problem),
            (EventType.CHOOSE_UNCLEAR, None),
            (EventType.SELECT_PRIMARY, "secondary-urgent"))


def test_switching_branch_clears_selections(engine, problem):
    state = run(engine, problem, engine.start(problem),
                (EventType.CHOOSE_UNCLEAR, None),
                (EventType.SELECT_PRIMARY, "primary-payment"),
                (EventType.CHOOSE_CLEAR, None),
                (EventType.CHOOSE_UNCLEAR, None))
    assert state.primary_option_id is None
    assert state.stage == DecisionStage.UNCLEAR_PRIMARY_SELECT


# ==================== Finish / reset ====================

def test_finish_only_from_resolution_stage(engine, problem):
    with pytest.raises(ValidationError):
        run(engine, problem, engine.start(problem), (EventType.FINISH, None))

    done = run(engine, problem, engine.start(problem),
               (EventType.CHOOSE_CLEAR, None),
               (EventType.FINISH, None))
    assert done.stage == DecisionStage.DONE

    with pytest.raises(ValidationError):
        run(engine, problem, done, (EventType.CHOOSE_UNCLEAR, None))

    reset = run(engine, problem, done, (EventType.RESET, None))
    assert reset == engine.start(problem)


def test_finish_after_unconfigured_pair(engine, problem):
    state = run(engine, problem, engine.start(problem),
                (EventType.CHOOSE_UNCLEAR, None),
                (EventType.SELECT_PRIMARY, "primary-other"),
                (EventType.SELECT_SECONDARY, "secondary-standard"))
    view = engine.view(problem, state, Language.EN)

    assert not view.resolution.found
    assert can_finish(view.stage)
    assert run(engine, problem, state, (EventType.FINISH, None)).stage == DecisionStage.DONE


def test_can_finish_stages():
    assert can_finish(DecisionStage.CLEAR_RESOLUTION)
    assert can_finish(DecisionStage.UNCLEAR_RESOLUTION_LOOKUP)
    assert not can_finish(DecisionStage.UNCLEAR_SECONDARY_SELECT)
    assert not can_finish(DecisionStage.START)
    assert not can_finish(DecisionStage.DONE)


# ==================== Stale references ====================

def test_removed_primary_rewinds_to_primary_selection(engine, problem):
    state = run(engine, problem, engine.start(problem),
                (EventType.CHOOSE_UNCLEAR, None),
                (EventType.SELECT_PRIMARY, "primary-payment"),
                (EventType.SELECT_SECONDARY, "secondary-urgent"))

    ResolutionMatrix(problem.unclear_path).remove_option("primary-payment")
    reconciled = engine.reconcile(problem, state)

    assert reconciled.stage == DecisionStage.UNCLEAR_PRIMARY_SELECT
    assert reconciled.primary_option_id is None
    assert reconciled.secondary_option_id == "secondary-urgent"
    assert reconciled.notice == message("STALE_PRIMARY")

    view = engine.view(problem, state)
    assert view.resolution is None
    assert view.notice == message("STALE_PRIMARY")


def test_removed_secondary_rewinds_to_secondary_selection(engine, problem):
    state = run(engine, problem, engine.start(problem),
                (EventType.CHOOSE_UNCLEAR, None),
                (EventType.SELECT_PRIMARY, "primary-payment"),
                (EventType.SELECT_SECONDARY, "secondary-urgent"))

    ResolutionMatrix(problem.unclear_path).remove_option("secondary-urgent")
    reconciled = engine.reconcile(problem, state)

    assert reconciled.stage == DecisionStage.UNCLEAR_SECONDARY_SELECT
    assert reconciled.primary_option_id == "primary-payment"
    assert reconciled.secondary_option_id is None


def test_reconcile_leaves_valid_state_untouched(engine, problem):
    state = run(engine, problem, engine.start(problem),
                (EventType.CHOOSE_UNCLEAR, None),
                (EventType.SELECT_PRIMARY, "primary-payment"))
    assert engine.reconcile(problem, state) is state


# ==================== Session storage ====================

def test_session_manager_round_trip_in_memory(engine, problem):
    sessions = SessionManager()
    state = run(engine, problem, engine.start(problem),
                (EventType.TOGGLE_VERIFICATION, "1-v1"),
                (EventType.CHOOSE_UNCLEAR, None),
                (EventType.SELECT_PRIMARY, "primary-payment"))

    sessions.save_state("s1", state)

    assert sessions.get_state("s1") == state
    sessions.clear_state("s1")
    assert sessions.get_state("s1") is None


class BrokenRedis:
    def ping(self):
        raise ConnectionError("redis down")


def test_session_manager_falls_back_when_redis_unavailable(engine, problem):
    sessions = SessionManager(BrokenRedis())
    state = engine.start(problem)

    sessions.save_state("s2", state)

    assert sessions.get_state("s2") == state
