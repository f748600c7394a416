"""
Knowledge Taxonomy
==================

Kho dữ liệu trong bộ nhớ cho Category -> Scenario -> Problem và thư viện Script.

Cung cấp:
- Tra cứu theo id (NotFoundError nếu không có)
- Danh sách đã sắp theo order
- CRUD cho editor, mỗi thay đổi ghi một dòng audit
- Lọc thư viện script, kiểm tra placeholder
"""

import logging
import re
from datetime import datetime
from typing import Optional, List, Dict, Any

from schema import (
    Category,
    Scenario,
    Problem,
    Script,
    User,
    UnclearPath,
    AuditAction,
    EntityType,
    NotFoundError,
    ValidationError,
)
from resolution_matrix import ResolutionMatrix, reorder_items

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\[[^\[\]\n]+\]")

IMMUTABLE_FIELDS = {"id", "created_at", "created_by"}


class KnowledgeBase:
    """
    In-memory store. `version` tăng sau mỗi thay đổi để search index biết khi nào build lại.

    audit: object có method record(action, entity_type, entity_id, entity_name, actor, changes).
    """

    def __init__(self, audit=None):
        self.audit = audit
        self.version = 0
        self._categories: Dict[str, Category] = {}
        self._scenarios: Dict[str, Scenario] = {}
        self._problems: Dict[str, Problem] = {}
        self._scripts: Dict[str, Script] = {}

    # ==================== Read API ====================

    def get_category(self, category_id: str) -> Category:
        return self._get(self._categories, category_id, EntityType.CATEGORY)

    def get_scenario(self, scenario_id: str) -> Scenario:
        return self._get(self._scenarios, scenario_id, EntityType.SCENARIO)

    def get_problem(self, problem_id: str) -> Problem:
        return self._get(self._problems, problem_id, EntityType.PROBLEM)

    def get_script(self, script_id: str) -> Script:
        return self._get(self._scripts, script_id, EntityType.SCRIPT)

    def list_categories(self, active_only: bool = True) -> List[Category]:
        items = [c for c in self._categories.values() if c.is_active or not active_only]
        return sorted(items, key=lambda c: c.order)

    def list_scenarios(self, category_id: str, active_only: bool = True) -> List[Scenario]:
        items = [
            s for s in self._scenarios.values()
            if s.category_id == category_id and (s.is_active or not active_only)
        ]
        return sorted(items, key=lambda s: s.order)

    def list_problems(
        self,
        category_id: Optional[str] = None,
        scenario_id: Optional[str] = None
    ) -> List[Problem]:
        return [
            p for p in self._problems.values()
            if (category_id is None or p.category_id == category_id)
            and (scenario_id is None or p.scenario_id == scenario_id)
        ]

    def list_scripts(self) -> List[Script]:
        return list(self._scripts.values())

    # ==================== Categories ====================

    def add_category(self, category: Category, actor: Optional[User] = None) -> Category:
        self._require_label(category.name, "Category name")
        self._require_new(self._categories, category.id, EntityType.CATEGORY)
        self._categories[category.id] = category
        self._changed(AuditAction.ADDED, EntityType.CATEGORY, category.id, category.name, actor,
                      {"name": category.name})
        return category

    def update_category(self, category_id: str, actor: Optional[User] = None, **changes) -> Category:
        category = self.get_category(category_id)
        if "name" in changes:
            self._require_label(changes["name"], "Category name")
        self._apply(category, changes)
        self._changed(AuditAction.EDITED, EntityType.CATEGORY, category.id, category.name, actor, changes)
        return category

    def delete_category(self, category_id: str, actor: Optional[User] = None) -> None:
        category = self.get_category(category_id)
        if any(s.category_id == category_id for s in self._scenarios.values()):
            raise ValidationError(f"Category {category_id} still has scenarios")
        if any(p.category_id == category_id for p in self._problems.values()):
            raise ValidationError(f"Category {category_id} still has problems")
        del self._categories[category_id]
        self._changed(AuditAction.DELETED, EntityType.CATEGORY, category.id, category.name, actor)

    def reorder_categories(self, from_index: int, to_index: int, actor: Optional[User] = None) -> List[Category]:
        ordered = reorder_items(self.list_categories(active_only=False), from_index, to_index)
        moved = ordered[to_index]
        self._changed(AuditAction.EDITED, EntityType.CATEGORY, moved.id, moved.name, actor,
                      {"order": moved.order})
        return ordered

    # ==================== Scenarios ====================

    def add_scenario(self, scenario: Scenario, actor: Optional[User] = None) -> Scenario:
        self._require_label(scenario.name, "Scenario name")
        self._require_new(self._scenarios, scenario.id, EntityType.SCENARIO)
        self.get_category(scenario.category_id)
        self._scenarios[scenario.id] = scenario
        self._changed(AuditAction.ADDED, EntityType.SCENARIO, scenario.id, scenario.name, actor,
                      {"name": scenario.name, "category_id": scenario.category_id})
        return scenario

    def update_scenario(self, scenario_id: str, actor: Optional[User] = None, **changes) -> Scenario:
        scenario = self.get_scenario(scenario_id)
        if "name" in changes:
            self._require_label(changes["name"], "Scenario name")
        if "category_id" in changes:
            self.get_category(changes["category_id"])
        self._apply(scenario, changes)
        self._changed(AuditAction.EDITED, EntityType.SCENARIO, scenario.id, scenario.name, actor, changes)
        return scenario

    def delete_scenario(self, scenario_id: str, actor: Optional[User] = None) -> None:
        scenario = self.get_scenario(scenario_id)
        if any(p.scenario_id == scenario_id for p in self._problems.values()):
            raise ValidationError(f"Scenario {scenario_id} still has problems")
        del self._scenarios[scenario_id]
        self._changed(AuditAction.DELETED, EntityType.SCENARIO, scenario.id, scenario.name, actor)

    def reorder_scenarios(
        self,
        category_id: str,
        from_index: int,
        to_index: int,
        actor: Optional[User] = None
    ) -> List[Scenario]:
        ordered = reorder_items(self.list_scenarios(category_id, active_only=False), from_index, to_index)
        moved = ordered[to_index]
        self._changed(AuditAction.EDITED, EntityType.SCENARIO, moved.id, moved.name, actor,
                      {"order": moved.order})
        return ordered

    # ==================== Problems ====================

    def add_problem(self, problem: Problem, actor: Optional[User] = None) -> Problem:
        self._validate_problem(problem)
        self._require_new(self._problems, problem.id, EntityType.PROBLEM)
        if actor and not problem.created_by:
            problem.created_by = actor.name
        self._problems[problem.id] = problem
        self._changed(AuditAction.ADDED, EntityType.PROBLEM, problem.id, problem.title, actor, {
            "title": problem.title,
            "priority": problem.priority.value,
            "status": problem.status.value,
        })
        return problem

    def update_problem(self, problem_id: str, actor: Optional[User] = None, **changes) -> Problem:
        problem = self.get_problem(problem_id)
        self._check_fields(problem, changes)
        candidate = {**vars(problem), **changes}
        self._validate_problem(Problem(**candidate))
        self._apply(problem, changes)
        problem.updated_at = datetime.now()
        self._changed(AuditAction.EDITED, EntityType.PROBLEM, problem.id, problem.title, actor,
                      {k: str(v) for k, v in changes.items()})
        return problem

    def delete_problem(self, problem_id: str, actor: Optional[User] = None) -> None:
        problem = self.get_problem(problem_id)
        del self._problems[problem_id]
        self._changed(AuditAction.DELETED, EntityType.PROBLEM, problem.id, problem.title, actor)

    def save_unclear_path(self, problem_id: str, unclear_path: UnclearPath, actor: Optional[User] = None) -> Problem:
        """Editor save: validation errors block the save."""
        problem = self.get_problem(problem_id)
        ResolutionMatrix(unclear_path).validate()
        problem.unclear_path = unclear_path
        problem.updated_at = datetime.now()
        self._changed(AuditAction.EDITED, EntityType.PROBLEM, problem.id, problem.title, actor, {
            "unclear_path": unclear_path.id,
            "primary_options": len(unclear_path.primary_options),
            "secondary_options": len(unclear_path.secondary_options),
            "result_mappings": len(unclear_path.result_mappings),
        })
        return problem

    def touch_problem(self, problem_id: str, actor: Optional[User] = None, changes: Dict[str, Any] = None) -> None:
        """Record an in-place edit made through another engine (e.g. the resolution matrix)."""
        problem = self.get_problem(problem_id)
        problem.updated_at = datetime.now()
        self._changed(AuditAction.EDITED, EntityType.PROBLEM, problem.id, problem.title, actor, changes)

    # ==================== Scripts ====================

    def add_script(self, script: Script, actor: Optional[User] = None) -> Script:
        self._require_label(script.title, "Script title")
        self._require_new(self._scripts, script.id, EntityType.SCRIPT)
        self._scripts[script.id] = script
        self._changed(AuditAction.ADDED, EntityType.SCRIPT, script.id, script.title, actor,
                      {"title": script.title, "category": script.category})
        return script

    def update_script(self, script_id: str, actor: Optional[User] = None, **changes) -> Script:
        script = self.get_script(script_id)
        if "title" in changes:
            self._require_label(changes["title"], "Script title")
        self._apply(script, changes)
        script.updated_at = datetime.now()
        self._changed(AuditAction.EDITED, EntityType.SCRIPT, script.id, script.title, actor,
                      {k: str(v) for k, v in changes.items()})
        return script

    def delete_script(self, script_id: str, actor: Optional[User] = None) -> None:
        script = self.get_script(script_id)
        del self._scripts[script_id]
        self._changed(AuditAction.DELETED, EntityType.SCRIPT, script.id, script.title, actor)

    def filter_scripts(
        self,
        query: str = "",
        category: Optional[str] = None,
        tag: Optional[str] = None
    ) -> List[Script]:
        """Thư viện script: query khớp title, content hoặc tag; category/tag None = tất cả."""
        needle = query.lower()
        results = []
        for script in self._scripts.values():
            matches_query = (
                needle in script.title.lower()
                or needle in script.content.lower()
                or any(needle in t.lower() for t in script.tags)
            )
            if not matches_query:
                continue
            if category is not None and script.category != category:
                continue
            if tag is not None and tag not in script.tags:
                continue
            results.append(script)
        return results

    def script_tags(self) -> List[str]:
        tags: List[str] = []
        for script in self._scripts.values():
            for t in script.tags:
                if t not in tags:
                    tags.append(t)
        return tags

    # ==================== Helpers ====================

    def _validate_problem(self, problem: Problem) -> None:
        self._require_label(problem.title, "Problem title")
        self.get_category(problem.category_id)
        scenario = self.get_scenario(problem.scenario_id)
        if scenario.category_id != problem.category_id:
            raise ValidationError(
                f"Scenario {scenario.id} belongs to {scenario.category_id}, not {problem.category_id}"
            )
        levels = [faq.level for faq in problem.faq_levels]
        if levels != list(range(1, len(levels) + 1)):
            logger.warning(f"Problem {problem.id}: FAQ levels {levels} are not contiguous from 1")
        if problem.unclear_path is not None:
            ResolutionMatrix(problem.unclear_path).validate()

    def _changed(
        self,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: str,
        entity_name: str,
        actor: Optional[User],
        changes: Optional[Dict[str, Any]] = None
    ) -> None:
        self.version += 1
        logger.info(f"{action.value} {entity_type.value} {entity_id} (version={self.version})")
        if self.audit is not None:
            self.audit.record(action, entity_type, entity_id, entity_name, actor, changes)

    @staticmethod
    def _get(store: Dict[str, Any], item_id: str, entity_type: EntityType):
        item = store.get(item_id)
        if item is None:
            raise NotFoundError(f"{entity_type.value} {item_id} not found")
        return item

    @staticmethod
    def _require_new(store: Dict[str, Any], item_id: str, entity_type: EntityType) -> None:
        if item_id in store:
            raise ValidationError(f"{entity_type.value} {item_id} already exists")

    @staticmethod
    def _require_label(value: str, name: str) -> None:
        if not value or not value.strip():
            raise ValidationError(f"{name} is required")

    @staticmethod
    def _check_fields(entity, changes: Dict[str, Any]) -> None:
        for key in changes:
            if key in IMMUTABLE_FIELDS or not hasattr(entity, key):
                raise ValidationError(f"Field '{key}' cannot be updated on {type(entity).__name__}")

    def _apply(self, entity, changes: Dict[str, Any]) -> None:
        self._check_fields(entity, changes)
        for key, value in changes.items():
            setattr(entity, key, value)


# ==============================================================================
# SCRIPT PLACEHOLDERS
# ==============================================================================

def placeholders_in(text: str) -> List[str]:
    """Bracketed tokens in order of first appearance, e.g. ["[Customer Name]", "[ORDER_ID]"]."""
    found: List[str] = []
    for token in PLACEHOLDER_PATTERN.findall(text or ""):
        if token not in found:
            found.append(token)
    return found


def undeclared_placeholders(script: Script) -> List[str]:
    declared = {v.placeholder for v in script.variables}
    return [p for p in placeholders_in(script.content) if p not in declared]


def unused_variables(script: Script) -> List[str]:
    used = set(placeholders_in(script.content))
    return [v.name for v in script.variables if v.placeholder not in used]
