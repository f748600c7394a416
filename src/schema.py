from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any
from datetime import datetime


# ==============================================================================
# ENUMS
# ==============================================================================

class Language(str, Enum):
    EN = "EN"
    AR = "AR"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ProblemStatus(str, Enum):
    PENDING = "pending"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"


class InstructionType(str, Enum):
    # Chỉ ảnh hưởng cách hiển thị
    TEXT = "text"
    ACTION = "action"
    WARNING = "warning"
    INFO = "info"


class UserRole(str, Enum):
    ADMIN = "Admin"
    EDITOR = "Editor"
    AGENT = "Agent"


class AuditAction(str, Enum):
    ADDED = "Added"
    EDITED = "Edited"
    DELETED = "Deleted"


class EntityType(str, Enum):
    CATEGORY = "Category"
    SCENARIO = "Scenario"
    PROBLEM = "Problem"
    SCRIPT = "Script"
    USER = "User"


class SearchResultType(str, Enum):
    PROBLEM = "problem"
    SCRIPT = "script"
    CATEGORY = "category"
    SCENARIO = "scenario"


class DecisionStage(str, Enum):
    START = "start"
    FAQ_BROWSING = "faq_browsing"
    VERIFICATION_CHECKLIST = "verification_checklist"
    RESOLUTION_CHOICE = "resolution_choice"
    CLEAR_RESOLUTION = "clear_resolution"
    UNCLEAR_PRIMARY_SELECT = "unclear_primary_select"
    UNCLEAR_SECONDARY_SELECT = "unclear_secondary_select"
    UNCLEAR_RESOLUTION_LOOKUP = "unclear_resolution_lookup"
    DONE = "done"


class EventType(str, Enum):
    SELECT_FAQ_LEVEL = "select_faq_level"
    TOGGLE_VERIFICATION = "toggle_verification"
    REQUEST_RESOLUTION = "request_resolution"
    CHOOSE_CLEAR = "choose_clear"
    CHOOSE_UNCLEAR = "choose_unclear"
    SELECT_PRIMARY = "select_primary"
    SELECT_SECONDARY = "select_secondary"
    FINISH = "finish"
    RESET = "reset"


# ==============================================================================
# EXCEPTIONS
# ==============================================================================

class KnowledgeBaseError(Exception):
    """Base error for the knowledge base core."""


class NotFoundError(KnowledgeBaseError):
    """Referenced entity, option or mapping does not exist."""


class ValidationError(KnowledgeBaseError):
    """Mutation rejected; state is left unchanged."""


class DuplicateMappingError(ValidationError):
    """More than one ResultMapping for the same (primary, secondary) pair."""


class StaleReferenceError(KnowledgeBaseError):
    """A session points at an option that an editor has since removed."""

    def __init__(self, message: str, stage: "DecisionStage" = None):
        super().__init__(message)
        self.stage = stage


# ==============================================================================
# TAXONOMY
# ==============================================================================

@dataclass
class Scenario:
    id: str
    name: str
    name_ar: str
    category_id: str
    icon: str = ""
    color: str = ""
    order: int = 1
    is_active: bool = True


@dataclass
class Category:
    id: str
    name: str
    name_ar: str
    description: str = ""
    description_ar: str = ""
    icon: str = ""
    color: str = ""
    order: int = 1
    is_active: bool = True


# ==============================================================================
# SCRIPTS
# ==============================================================================

@dataclass
class ScriptVariable:
    """Metadata only: placeholders are never substituted automatically."""
    id: str
    name: str
    placeholder: str  # e.g. "[Customer Name]"
    description: str = ""
    is_required: bool = False


@dataclass
class Script:
    id: str
    title: str
    title_ar: str
    content: str
    content_ar: str = ""
    category: str = ""
    tags: List[str] = field(default_factory=list)
    color: Optional[str] = None
    is_template: bool = False
    variables: List[ScriptVariable] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    created_by: str = ""


# ==============================================================================
# RESOLUTION PATHS
# ==============================================================================

@dataclass
class Instruction:
    id: str
    content: str
    content_ar: str = ""
    order: int = 1
    type: InstructionType = InstructionType.TEXT


@dataclass
class ClearPath:
    id: str
    instructions: List[Instruction] = field(default_factory=list)
    script: Optional[Script] = None


@dataclass
class PrimaryOption:
    id: str
    label: str
    label_ar: str = ""
    order: int = 1


@dataclass
class SecondaryOption:
    id: str
    label: str
    label_ar: str = ""
    order: int = 1


@dataclass
class ResultMapping:
    """Một ô của ma trận quyết định: (primary, secondary) -> instructions + script."""
    id: str
    primary_option_id: str
    secondary_option_id: str
    instructions: List[Instruction] = field(default_factory=list)
    script: Optional[Script] = None


@dataclass
class UnclearPath:
    id: str
    primary_options: List[PrimaryOption] = field(default_factory=list)
    secondary_options: List[SecondaryOption] = field(default_factory=list)
    result_mappings: List[ResultMapping] = field(default_factory=list)


# ==============================================================================
# PROBLEMS
# ==============================================================================

@dataclass
class FAQLevel:
    id: str
    level: int
    question: str
    question_ar: str = ""
    answer: str = ""
    answer_ar: str = ""
    is_required: bool = False  # informational only, never gates progression


@dataclass
class VerificationStep:
    id: str
    step: str
    step_ar: str = ""
    order: int = 1
    is_required: bool = False  # informational only, never gates progression


@dataclass
class Problem:
    id: str
    title: str
    title_ar: str
    category_id: str
    scenario_id: str
    priority: Priority = Priority.MEDIUM
    status: ProblemStatus = ProblemStatus.PENDING
    faq_levels: List[FAQLevel] = field(default_factory=list)
    verification_steps: List[VerificationStep] = field(default_factory=list)
    clear_path: Optional[ClearPath] = None
    unclear_path: Optional[UnclearPath] = None
    tags: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    created_by: str = ""


# ==============================================================================
# USERS & AUDIT
# ==============================================================================

@dataclass
class User:
    id: str
    name: str
    email: str
    role: UserRole = UserRole.AGENT
    created_at: datetime = field(default_factory=datetime.now)
    last_login: Optional[datetime] = None


@dataclass(frozen=True)
class ActivityLog:
    """Append-only record of one editorial mutation."""
    id: str
    action: AuditAction
    entity_type: EntityType
    entity_id: str
    entity_name: str
    user_id: str
    user_name: str
    timestamp: datetime
    changes: Optional[Dict[str, Any]] = None


# ==============================================================================
# SEARCH
# ==============================================================================

@dataclass
class SearchResult:
    id: str
    type: SearchResultType
    title: str
    content: str
    category: str
    relevance: int = 0
    highlights: List[str] = field(default_factory=list)


# ==============================================================================
# RESOLUTION & SESSION STATE
# ==============================================================================

@dataclass
class Resolution:
    """Instructions + script shown to the agent. found=False is the neutral empty state."""
    found: bool
    instructions: List[Instruction] = field(default_factory=list)
    script: Optional[Script] = None
    mapping_id: Optional[str] = None
    message: str = ""


@dataclass
class DecisionEvent:
    type: EventType
    value: Optional[Any] = None  # level number or option/step id


@dataclass
class SessionState:
    """
    Trạng thái phiên của agent cho một Problem.
    Serializable: to_dict/from_dict dùng để lưu vào Redis.
    """
    problem_id: str
    stage: DecisionStage = DecisionStage.START
    faq_level: int = 1
    checked_steps: List[str] = field(default_factory=list)
    is_clear: Optional[bool] = None
    primary_option_id: Optional[str] = None
    secondary_option_id: Optional[str] = None
    notice: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "problem_id": self.problem_id,
            "stage": self.stage.value,
            "faq_level": self.faq_level,
            "checked_steps": list(self.checked_steps),
            "is_clear": self.is_clear,
            "primary_option_id": self.primary_option_id,
            "secondary_option_id": self.secondary_option_id,
            "notice": self.notice,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionState":
        return cls(
            problem_id=data["problem_id"],
            stage=DecisionStage(data.get("stage", DecisionStage.START.value)),
            faq_level=int(data.get("faq_level", 1)),
            checked_steps=list(data.get("checked_steps") or []),
            is_clear=data.get("is_clear"),
            primary_option_id=data.get("primary_option_id"),
            secondary_option_id=data.get("secondary_option_id"),
            notice=data.get("notice"),
        )


@dataclass
class DecisionView:
    """Everything the presentation layer needs to render one step of the flow."""
    problem_id: str
    stage: DecisionStage
    faq_level: int
    faq_answer: Optional[str]
    checklist: Dict[str, bool]
    resolution: Optional[Resolution] = None
    notice: Optional[str] = None


# ==============================================================================
# CONSTANTS
# ==============================================================================

class Config:
    """
    cấu hình hệ thống
    """

    # === Search ===
    SEARCH_DEBOUNCE_MS = 300
    SEARCH_MAX_RESULTS = 10
    SEARCH_MAX_CONTENT_HIGHLIGHTS = 3
    TITLE_MATCH_WEIGHT = 10
    CONTENT_MATCH_WEIGHT = 5
    CATEGORY_DOCUMENT_LABEL = "Category"

    # === Session ===
    SESSION_TTL_SECONDS = 1800  # 30 phút
    SESSION_KEY_PREFIX = "session:"

    # === Audit ===
    LATEST_UPDATES_LIMIT = 5
    AUDIT_REDIS_KEY = "audit:activity_log"
    AUDIT_REDIS_MAX_ENTRIES = 1000

    # === Auth (stub) ===
    DEFAULT_ADMIN_EMAIL = "admin@clearpath.com"
    DEFAULT_ADMIN_PASSWORD = "admin123"

    # === Localization ===
    DEFAULT_LANGUAGE = Language.EN


# ==============================================================================
# MESSAGE TEMPLATES
# ==============================================================================

MESSAGES: Dict[str, Dict[str, str]] = {
    "NO_CLASSIFICATION": {
        "EN": "No classification configured yet for this combination.",
        "AR": "لم يتم تكوين تصنيف لهذه المجموعة بعد.",
    },
    "NO_CLEAR_PATH": {
        "EN": "No clear resolution path configured yet for this problem.",
        "AR": "لم يتم تكوين مسار حل واضح لهذه المشكلة بعد.",
    },
    "STALE_PRIMARY": {
        "EN": "The selected primary option was removed. Please choose again.",
        "AR": "تمت إزالة الخيار الأساسي المحدد. يرجى الاختيار مرة أخرى.",
    },
    "STALE_SECONDARY": {
        "EN": "The selected secondary option was removed. Please choose again.",
        "AR": "تمت إزالة الخيار الثانوي المحدد. يرجى الاختيار مرة أخرى.",
    },
}


def localize(text: str, text_ar: str, language: Language = Config.DEFAULT_LANGUAGE) -> str:
    """Pick the Arabic text when requested and present, English otherwise."""
    if language == Language.AR and text_ar:
        return text_ar
    return text


def message(key: str, language: Language = Config.DEFAULT_LANGUAGE) -> str:
    entry = MESSAGES.get(key, {})
    return entry.get(language.value) or entry.get(Language.EN.value, key)
