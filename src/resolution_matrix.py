"""
Resolution Matrix Engine
========================

Quản lý ma trận primary × secondary -> ResultMapping cho nhánh "Unclear":
- Thêm / xóa / sắp xếp lại option (order luôn dày đặc, bắt đầu từ 1)
- Sinh mapping còn thiếu (không ghi đè nội dung đã biên tập)
- Xóa dây chuyền mapping khi option bị xóa
- Tra cứu mapping theo (primary_id, secondary_id)
"""

import logging
import threading
import uuid
from typing import List, Optional, Any, TypeVar

from schema import (
    Problem,
    UnclearPath,
    PrimaryOption,
    SecondaryOption,
    ResultMapping,
    Instruction,
    InstructionType,
    Resolution,
    Script,
    Language,
    Config,
    NotFoundError,
    ValidationError,
    DuplicateMappingError,
    message,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRIMARY = "primary"
SECONDARY = "secondary"

MAPPING_FIELDS = {"instructions", "script", "primary_option_id", "secondary_option_id"}
INSTRUCTION_FIELDS = {"content", "content_ar", "type", "order"}


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _instruction_type(value: Any) -> InstructionType:
    try:
        return InstructionType(value)
    except ValueError:
        raise ValidationError(f"Unknown instruction type: {value!r}")


def reorder_items(items: List[T], from_index: int, to_index: int) -> List[T]:
    """Move one item and reassign dense 1-based `order` fields. Returns a new list."""
    size = len(items)
    if not (0 <= from_index < size) or not (0 <= to_index < size):
        raise ValidationError(
            f"Reorder indices out of range: from={from_index}, to={to_index}, size={size}"
        )
    reordered = list(items)
    moved = reordered.pop(from_index)
    reordered.insert(to_index, moved)
    for position, item in enumerate(reordered, start=1):
        item.order = position
    return reordered


class ResolutionMatrix:
    """
    Engine bao quanh một UnclearPath.

    Mọi thao tác đều đồng bộ, sửa UnclearPath tại chỗ và trả về chính nó.
    remove_option và generate_mappings dùng chung một lock nên không thể
    sinh lại một mapping trong lúc nó đang bị xóa dây chuyền.
    """

    def __init__(self, unclear_path: Optional[UnclearPath] = None):
        self.path = unclear_path or UnclearPath(id=_new_id("unclear"))
        self._lock = threading.RLock()

    # ==================== Options ====================

    def add_primary_option(self, label: str = "", label_ar: str = "") -> UnclearPath:
        option = PrimaryOption(
            id=self._unique_option_id(PRIMARY),
            label=label,
            label_ar=label_ar,
            order=len(self.path.primary_options) + 1,
        )
        self.path.primary_options.append(option)
        logger.debug(f"Added primary option {option.id} (order={option.order})")
        return self.path

    def add_secondary_option(self, label: str = "", label_ar: str = "") -> UnclearPath:
        option = SecondaryOption(
            id=self._unique_option_id(SECONDARY),
            label=label,
            label_ar=label_ar,
            order=len(self.path.secondary_options) + 1,
        )
        self.path.secondary_options.append(option)
        logger.debug(f"Added secondary option {option.id} (order={option.order})")
        return self.path

    def update_option(
        self,
        option_id: str,
        label: Optional[str] = None,
        label_ar: Optional[str] = None
    ) -> UnclearPath:
        option = self.get_option(option_id)
        if label is not None:
            option.label = label
        if label_ar is not None:
            option.label_ar = label_ar
        return self.path

    def remove_option(self, option_id: str) -> UnclearPath:
        """Remove an option from whichever axis holds it and cascade its mappings."""
        with self._lock:
            if self._find(self.path.primary_options, option_id):
                axis_field = "primary_option_id"
                self.path.primary_options = [
                    o for o in self.path.primary_options if o.id != option_id
                ]
                for position, option in enumerate(self.path.primary_options, start=1):
                    option.order = position
            elif self._find(self.path.secondary_options, option_id):
                axis_field = "secondary_option_id"
                self.path.secondary_options = [
                    o for o in self.path.secondary_options if o.id != option_id
                ]
                for position, option in enumerate(self.path.secondary_options, start=1):
                    option.order = position
            else:
                raise NotFoundError(f"Option {option_id} not found in {self.path.id}")

            # chỉ xóa mapping trỏ tới option này trên đúng trục của nó
            before = len(self.path.result_mappings)
            self.path.result_mappings = [
                m for m in self.path.result_mappings
                if getattr(m, axis_field) != option_id
            ]
            removed = before - len(self.path.result_mappings)

        logger.info(f"Removed option {option_id} from {self.path.id}, cascaded {removed} mapping(s)")
        return self.path

    def get_option(self, option_id: str):
        option = (
            self._find(self.path.primary_options, option_id)
            or self._find(self.path.secondary_options, option_id)
        )
        if option is None:
            raise NotFoundError(f"Option {option_id} not found in {self.path.id}")
        return option

    def reorder(self, list_id: str, from_index: int, to_index: int) -> UnclearPath:
        if list_id == PRIMARY:
            self.path.primary_options = reorder_items(self.path.primary_options, from_index, to_index)
        elif list_id == SECONDARY:
            self.path.secondary_options = reorder_items(self.path.secondary_options, from_index, to_index)
        else:
            raise ValidationError(f"Unknown option list: {list_id}")
        return self.path

    # ==================== Mappings ====================

    def generate_mappings(self) -> UnclearPath:
        """
        Tạo mapping rỗng cho mọi cặp (primary, secondary) chưa có.
        Mapping đã tồn tại được giữ nguyên.
        """
        with self._lock:
            covered = {
                (m.primary_option_id, m.secondary_option_id)
                for m in self.path.result_mappings
            }
            used_ids = {m.id for m in self.path.result_mappings}
            created = []
            for primary in self.path.primary_options:
                for secondary in self.path.secondary_options:
                    if (primary.id, secondary.id) in covered:
                        continue
                    mapping_id = f"mapping-{primary.id}-{secondary.id}"
                    if mapping_id in used_ids:
                        # id cũ vẫn thuộc về một mapping đã đổi cặp
                        mapping_id = _new_id("mapping")
                    created.append(ResultMapping(
                        id=mapping_id,
                        primary_option_id=primary.id,
                        secondary_option_id=secondary.id,
                    ))
            self.path.result_mappings.extend(created)

        logger.info(
            f"Generated {len(created)} mapping(s) for {self.path.id} "
            f"({len(self.path.primary_options)}x{len(self.path.secondary_options)})"
        )
        return self.path

    def get_mapping(self, mapping_id: str) -> ResultMapping:
        mapping = self._find(self.path.result_mappings, mapping_id)
        if mapping is None:
            raise NotFoundError(f"Mapping {mapping_id} not found in {self.path.id}")
        return mapping

    def update_mapping(self, mapping_id: str, field: str, value: Any) -> UnclearPath:
        if field not in MAPPING_FIELDS:
            raise ValidationError(f"Field '{field}' cannot be updated on a mapping")
        mapping = self.get_mapping(mapping_id)

        if field in ("primary_option_id", "secondary_option_id"):
            options = (
                self.path.primary_options if field == "primary_option_id"
                else self.path.secondary_options
            )
            if self._find(options, value) is None:
                raise NotFoundError(f"Option {value} not found in {self.path.id}")
            pair = (
                value if field == "primary_option_id" else mapping.primary_option_id,
                value if field == "secondary_option_id" else mapping.secondary_option_id,
            )
            for other in self.path.result_mappings:
                if other.id != mapping.id and (other.primary_option_id, other.secondary_option_id) == pair:
                    raise DuplicateMappingError(f"Pair {pair} is already covered by {other.id}")
        elif field == "instructions":
            value = list(value or [])
            if not all(isinstance(i, Instruction) for i in value):
                raise ValidationError("Mapping instructions must be Instruction objects")
        elif field == "script" and value is not None and not isinstance(value, Script):
            raise ValidationError("Mapping script must be a Script or None")

        setattr(mapping, field, value)
        return self.path

    def lookup(self, primary_id: str, secondary_id: str) -> Optional[ResultMapping]:
        """
        Tra cứu theo id, tính lại mỗi lần gọi.
        Trả None nếu một trong hai option không còn tồn tại hoặc chưa có mapping.
        """
        if self._find(self.path.primary_options, primary_id) is None:
            return None
        if self._find(self.path.secondary_options, secondary_id) is None:
            return None

        matches = [
            m for m in self.path.result_mappings
            if m.primary_option_id == primary_id and m.secondary_option_id == secondary_id
        ]
        if len(matches) > 1:
            raise DuplicateMappingError(
                f"{len(matches)} mappings for ({primary_id}, {secondary_id}) in {self.path.id}"
            )
        return matches[0] if matches else None

    # ==================== Instructions ====================

    def add_instruction(
        self,
        mapping_id: str,
        content: str = "",
        content_ar: str = "",
        type: InstructionType = InstructionType.TEXT
    ) -> UnclearPath:
        mapping = self.get_mapping(mapping_id)
        mapping.instructions.append(Instruction(
            id=_new_id("instruction"),
            content=content,
            content_ar=content_ar,
            order=max((i.order for i in mapping.instructions), default=0) + 1,
            type=_instruction_type(type),
        ))
        return self.path

    def update_instruction(self, mapping_id: str, instruction_id: str, field: str, value: Any) -> UnclearPath:
        if field not in INSTRUCTION_FIELDS:
            raise ValidationError(f"Field '{field}' cannot be updated on an instruction")
        instruction = self._find(self.get_mapping(mapping_id).instructions, instruction_id)
        if instruction is None:
            raise NotFoundError(f"Instruction {instruction_id} not found in {mapping_id}")
        if field == "type":
            value = _instruction_type(value)
        setattr(instruction, field, value)
        return self.path

    def remove_instruction(self, mapping_id: str, instruction_id: str) -> UnclearPath:
        # order của các instruction còn lại không được đánh số lại
        mapping = self.get_mapping(mapping_id)
        if self._find(mapping.instructions, instruction_id) is None:
            raise NotFoundError(f"Instruction {instruction_id} not found in {mapping_id}")
        mapping.instructions = [i for i in mapping.instructions if i.id != instruction_id]
        return self.path

    # ==================== Validation ====================

    def validate(self) -> None:
        """Checks run on save. Raises ValidationError on the first problem found."""
        option_ids = set()
        for axis, options in ((PRIMARY, self.path.primary_options), (SECONDARY, self.path.secondary_options)):
            for option in options:
                if not option.label.strip():
                    raise ValidationError(f"{axis.capitalize()} option {option.id} has an empty label")
                # id phải duy nhất trên cả hai trục
                if option.id in option_ids:
                    raise ValidationError(f"Option id {option.id} is used more than once in {self.path.id}")
                option_ids.add(option.id)

        primary_ids = {o.id for o in self.path.primary_options}
        secondary_ids = {o.id for o in self.path.secondary_options}
        seen = set()
        for mapping in self.path.result_mappings:
            if mapping.primary_option_id not in primary_ids:
                raise ValidationError(
                    f"Mapping {mapping.id} references missing primary option {mapping.primary_option_id}"
                )
            if mapping.secondary_option_id not in secondary_ids:
                raise ValidationError(
                    f"Mapping {mapping.id} references missing secondary option {mapping.secondary_option_id}"
                )
            pair = (mapping.primary_option_id, mapping.secondary_option_id)
            if pair in seen:
                raise DuplicateMappingError(f"Duplicate mapping for pair {pair}")
            seen.add(pair)

    # ==================== Helpers ====================

    def _unique_option_id(self, prefix: str) -> str:
        existing = {o.id for o in self.path.primary_options} | {o.id for o in self.path.secondary_options}
        option_id = _new_id(prefix)
        while option_id in existing:
            option_id = _new_id(prefix)
        return option_id

    @staticmethod
    def _find(items, item_id):
        for item in items:
            if item.id == item_id:
                return item
        return None


# ==============================================================================
# RESOLUTION
# ==============================================================================

def resolve_clear(problem: Problem, language: Language = Config.DEFAULT_LANGUAGE) -> Resolution:
    """ClearPath instructions (stored order) and script, unmodified."""
    if problem.clear_path is None:
        return Resolution(found=False, message=message("NO_CLEAR_PATH", language))
    return Resolution(
        found=True,
        instructions=list(problem.clear_path.instructions),
        script=problem.clear_path.script,
    )


def resolve_unclear(
    problem: Problem,
    primary_id: str,
    secondary_id: str,
    language: Language = Config.DEFAULT_LANGUAGE
) -> Resolution:
    """Lookup miss yields the neutral empty state, never an exception."""
    mapping = None
    if problem.unclear_path is not None:
        mapping = ResolutionMatrix(problem.unclear_path).lookup(primary_id, secondary_id)

    if mapping is None or (not mapping.instructions and mapping.script is None):
        # a generated cell nobody has curated yet counts as unconfigured
        logger.info(f"No configured mapping for ({primary_id}, {secondary_id}) on problem {problem.id}")
        return Resolution(found=False, message=message("NO_CLASSIFICATION", language))

    return Resolution(
        found=True,
        instructions=list(mapping.instructions),
        script=mapping.script,
        mapping_id=mapping.id,
    )
