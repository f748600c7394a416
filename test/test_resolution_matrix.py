"""
Test Resolution Matrix Engine
=============================

Sinh mapping, xóa dây chuyền, tra cứu, sắp xếp lại và validate trên UnclearPath.
"""

import sys
import os
import copy

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from schema import (
    Problem,
    ClearPath,
    Instruction,
    InstructionType,
    Script,
    UnclearPath,
    PrimaryOption,
    SecondaryOption,
    Language,
    NotFoundError,
    ValidationError,
    DuplicateMappingError,
)
from resolution_matrix import ResolutionMatrix, reorder_items, resolve_clear, resolve_unclear


def build_matrix(primary_labels, secondary_labels) -> ResolutionMatrix:
    matrix = ResolutionMatrix()
    for label in primary_labels:
        matrix.add_primary_option(label)
    for label in secondary_labels:
        matrix.add_secondary_option(label)
    return matrix


def option_ids(options):
    return [o.id for o in options]


# ==================== Options ====================

def test_added_options_get_dense_orders_and_unique_ids():
    matrix = build_matrix(["Technical Issue", "Account Problem", "Payment Issue"], ["Urgent"])
    path = matrix.path

    assert [o.order for o in path.primary_options] == [1, 2, 3]
    assert all(o.id.startswith("primary-") for o in path.primary_options)
    assert path.secondary_options[0].id.startswith("secondary-")
    all_ids = option_ids(path.primary_options) + option_ids(path.secondary_options)
    assert len(set(all_ids)) == len(all_ids)


def test_update_option_changes_only_given_labels():
    matrix = build_matrix(["Technical Issue"], [])
    option_id = matrix.path.primary_options[0].id

    matrix.update_option(option_id, label_ar="مشكلة تقنية")

    option = matrix.get_option(option_id)
    assert option.label == "Technical Issue"
    assert option.label_ar == "مشكلة تقنية"


def test_update_unknown_option_raises_not_found():
    matrix = build_matrix(["Technical Issue"], [])
    with pytest.raises(NotFoundError):
        matrix.update_option("primary-missing", label="x")


def test_remove_option_renumbers_survivors():
    matrix = build_matrix(["A", "B", "C"], ["X"])
    middle = matrix.path.primary_options[1].id

    matrix.remove_option(middle)

    assert [o.label for o in matrix.path.primary_options] == ["A", "C"]
    assert [o.order for o in matrix.path.primary_options] == [1, 2]


def test_remove_unknown_option_raises_not_found():
    matrix = build_matrix(["A"], ["X"])
    with pytest.raises(NotFoundError):
        matrix.remove_option("secondary-missing")


# ==================== Mapping generation ====================

@pytest.mark.parametrize("primary_count,secondary_count", [(0, 3), (1, 1), (6, 2), (3, 4)])
def test_generate_mappings_covers_cartesian_product(primary_count, secondary_count):
    matrix = build_matrix(
        [f"P{i}" for i in range(primary_count)],
        [f"S{i}" for i in range(secondary_count)],
    )

    path = matrix.generate_mappings()

    pairs = {(m.primary_option_id, m.secondary_option_id) for m in path.result_mappings}
    assert len(path.result_mappings) == primary_count * secondary_count
    assert len(pairs) == len(path.result_mappings)


def test_generate_mappings_is_idempotent_and_keeps_curated_content():
    matrix = build_matrix(["Payment Issue", "Other"], ["Urgent", "Standard"])
    matrix.generate_mappings()
    first = matrix.path.result_mappings[0]
    matrix.add_instruction(first.id, "Check payment method validity", type=InstructionType.ACTION)
    before = copy.deepcopy(matrix.path.result_mappings)

    matrix.generate_mappings()

    assert matrix.path.result_mappings == before


def test_generate_mappings_fills_only_new_pairs():
    matrix = build_matrix(["Payment Issue"], ["Urgent"])
    matrix.generate_mappings()
    matrix.add_primary_option("Account Problem")

    matrix.generate_mappings()

    assert len(matrix.path.result_mappings) == 2


def test_remove_option_cascades_only_referencing_mappings():
    matrix = build_matrix(["A", "B"], ["X", "Y"])
    matrix.generate_mappings()
    removed_id = matrix.path.primary_options[0].id
    survivors = copy.deepcopy([
        m for m in matrix.path.result_mappings if m.primary_option_id != removed_id
    ])

    matrix.remove_option(removed_id)

    assert matrix.path.result_mappings == survivors
    assert all(m.primary_option_id != removed_id for m in matrix.path.result_mappings)


def test_remove_secondary_option_cascades():
    matrix = build_matrix(["A", "B", "C"], ["X", "Y"])
    matrix.generate_mappings()
    secondary_id = matrix.path.secondary_options[1].id

    matrix.remove_option(secondary_id)

    assert len(matrix.path.result_mappings) == 3
    assert all(m.secondary_option_id != secondary_id for m in matrix.path.result_mappings)


# ==================== Lookup ====================

def test_lookup_finds_mapping_for_pair():
    matrix = build_matrix(["A"], ["X"])
    matrix.generate_mappings()
    p, s = matrix.path.primary_options[0].id, matrix.path.secondary_options[0].id

    mapping = matrix.lookup(p, s)

    assert mapping is not None
    assert (mapping.primary_option_id, mapping.secondary_option_id) == (p, s)


def test_lookup_returns_none_after_option_removed_even_with_stale_mapping_object():
    matrix = build_matrix(["A", "B"], ["X"])
    matrix.generate_mappings()
    p, s = matrix.path.primary_options[0].id, matrix.path.secondary_options[0].id
    stale = matrix.lookup(p, s)

    matrix.remove_option(p)

    assert stale is not None
    assert matrix.lookup(p, s) is None


def test_lookup_returns_none_for_unmapped_pair():
    matrix = build_matrix(["A"], ["X"])
    p, s = matrix.path.primary_options[0].id, matrix.path.secondary_options[0].id
    assert matrix.lookup(p, s) is None


# ==================== Mapping updates ====================

def test_update_mapping_rejects_duplicate_pair():
    matrix = build_matrix(["A", "B"], ["X"])
    matrix.generate_mappings()
    first, second = matrix.path.result_mappings

    with pytest.raises(DuplicateMappingError):
        matrix.update_mapping(first.id, "primary_option_id", second.primary_option_id)

    assert first.primary_option_id != second.primary_option_id


def test_update_mapping_rejects_unknown_option_and_field():
    matrix = build_matrix(["A"], ["X"])
    matrix.generate_mappings()
    mapping_id = matrix.path.result_mappings[0].id

    with pytest.raises(NotFoundError):
        matrix.update_mapping(mapping_id, "secondary_option_id", "secondary-missing")
    with pytest.raises(ValidationError):
        matrix.update_mapping(mapping_id, "id", "mapping-other")
    with pytest.raises(ValidationError):
        matrix.update_mapping(mapping_id, "script", "not a script")


def test_update_mapping_sets_script():
    matrix = build_matrix(["A"], ["X"])
    matrix.generate_mappings()
    mapping_id = matrix.path.result_mappings[0].id
    script = Script(id="s1", title="Payment Issue - Urgent", title_ar="", content="Hi [Customer Name]")

    matrix.update_mapping(mapping_id, "script", script)

    assert matrix.get_mapping(mapping_id).script is script


def test_repointed_mapping_keeps_generated_ids_unique():
    matrix = build_matrix(["A", "B"], ["X"])
    matrix.generate_mappings()
    a, b = option_ids(matrix.path.primary_options)
    matrix.remove_option(b)
    matrix.add_primary_option("B2")
    new_b = matrix.path.primary_options[-1].id
    matrix.update_mapping(matrix.path.result_mappings[0].id, "primary_option_id", new_b)

    matrix.generate_mappings()

    ids = [m.id for m in matrix.path.result_mappings]
    assert len(ids) == len(set(ids)) == 2
    matrix.validate()


# ==================== Instructions ====================

def test_instruction_orders_are_sparse_after_removal():
    matrix = build_matrix(["A"], ["X"])
    matrix.generate_mappings()
    mapping_id = matrix.path.result_mappings[0].id
    for text in ("first", "second", "third"):
        matrix.add_instruction(mapping_id, text)
    instructions = matrix.get_mapping(mapping_id).instructions
    assert [i.order for i in instructions] == [1, 2, 3]

    matrix.remove_instruction(mapping_id, instructions[1].id)

    remaining = matrix.get_mapping(mapping_id).instructions
    assert [i.content for i in remaining] == ["first", "third"]
    assert [i.order for i in remaining] == [1, 3]

    matrix.add_instruction(mapping_id, "fourth")
    assert matrix.get_mapping(mapping_id).instructions[-1].order == 4


def test_update_instruction_fields():
    matrix = build_matrix(["A"], ["X"])
    matrix.generate_mappings()
    mapping_id = matrix.path.result_mappings[0].id
    matrix.add_instruction(mapping_id, "Review order history")
    instruction_id = matrix.get_mapping(mapping_id).instructions[0].id

    matrix.update_instruction(mapping_id, instruction_id, "type", "warning")
    matrix.update_instruction(mapping_id, instruction_id, "content_ar", "راجع تاريخ الطلبات")

    instruction = matrix.get_mapping(mapping_id).instructions[0]
    assert instruction.type == InstructionType.WARNING
    assert instruction.content_ar == "راجع تاريخ الطلبات"
    with pytest.raises(ValidationError):
        matrix.update_instruction(mapping_id, instruction_id, "id", "x")
    with pytest.raises(NotFoundError):
        matrix.remove_instruction(mapping_id, "instruction-missing")


# ==================== Reorder ====================

def test_reorder_moves_option_and_recomputes_orders():
    matrix = build_matrix(["A", "B", "C", "D"], [])

    matrix.reorder("primary", 0, 2)

    assert [o.label for o in matrix.path.primary_options] == ["B", "C", "A", "D"]
    assert [o.order for o in matrix.path.primary_options] == [1, 2, 3, 4]


def test_reorder_rejects_bad_index_and_list():
    matrix = build_matrix(["A", "B"], ["X"])
    with pytest.raises(ValidationError):
        matrix.reorder("secondary", 0, 1)
    with pytest.raises(ValidationError):
        matrix.reorder("tertiary", 0, 0)
    assert [o.order for o in matrix.path.primary_options] == [1, 2]


def test_reorder_items_returns_new_list():
    matrix = build_matrix(["A", "B", "C"], [])
    original = matrix.path.primary_options

    reordered = reorder_items(original, 2, 0)

    assert [o.label for o in reordered] == ["C", "A", "B"]
    assert [o.label for o in original] == ["A", "B", "C"]


# ==================== Validation ====================

def test_validate_rejects_empty_label():
    matrix = build_matrix(["A"], ["   "])
    with pytest.raises(ValidationError):
        matrix.validate()


def test_validate_rejects_duplicate_pairs_and_dangling_references():
    matrix = build_matrix(["A"], ["X"])
    matrix.generate_mappings()
    matrix.validate()

    duplicate = copy.deepcopy(matrix.path.result_mappings[0])
    duplicate.id = "mapping-copy"
    matrix.path.result_mappings.append(duplicate)
    with pytest.raises(DuplicateMappingError):
        matrix.validate()
    with pytest.raises(DuplicateMappingError):
        matrix.lookup(duplicate.primary_option_id, duplicate.secondary_option_id)

    matrix.path.result_mappings[-1].primary_option_id = "primary-gone"
    with pytest.raises(ValidationError):
        matrix.validate()


def shared_id_path() -> UnclearPath:
    return UnclearPath(
        id="unclear-shared",
        primary_options=[PrimaryOption(id="1", label="Technical Issue", order=1),
                         PrimaryOption(id="2", label="Account Problem", order=2)],
        secondary_options=[SecondaryOption(id="1", label="Urgent", order=1),
                           SecondaryOption(id="2", label="Standard", order=2)],
    )


def test_validate_rejects_option_id_shared_across_axes():
    with pytest.raises(ValidationError):
        ResolutionMatrix(shared_id_path()).validate()


def test_validate_rejects_option_id_repeated_within_axis():
    path = UnclearPath(
        id="u",
        primary_options=[PrimaryOption(id="primary-a", label="A"), PrimaryOption(id="primary-a", label="B")],
    )
    with pytest.raises(ValidationError):
        ResolutionMatrix(path).validate()


def test_remove_option_cascades_on_its_own_axis_only():
    matrix = ResolutionMatrix(shared_id_path())
    matrix.generate_mappings()

    matrix.remove_option("1")

    assert option_ids(matrix.path.secondary_options) == ["1", "2"]
    assert sorted((m.primary_option_id, m.secondary_option_id) for m in matrix.path.result_mappings) == [
        ("2", "1"), ("2", "2")
    ]


# ==================== Instruction input ====================

def test_unknown_instruction_type_is_a_validation_error():
    matrix = build_matrix(["A"], ["X"])
    matrix.generate_mappings()
    mapping_id = matrix.path.result_mappings[0].id

    with pytest.raises(ValidationError):
        matrix.add_instruction(mapping_id, "Escalate", type="bogus")
    assert matrix.get_mapping(mapping_id).instructions == []

    matrix.add_instruction(mapping_id, "Escalate")
    instruction_id = matrix.get_mapping(mapping_id).instructions[0].id
    with pytest.raises(ValidationError):
        matrix.update_instruction(mapping_id, instruction_id, "type", "bogus")
    assert matrix.get_mapping(mapping_id).instructions[0].type == InstructionType.TEXT


def test_update_mapping_instructions_must_be_instruction_objects():
    matrix = build_matrix(["A"], ["X"])
    matrix.generate_mappings()
    mapping_id = matrix.path.result_mappings[0].id

    with pytest.raises(ValidationError):
        matrix.update_mapping(mapping_id, "instructions", ["Verify account", {"content": "x"}])
    assert matrix.get_mapping(mapping_id).instructions == []

    steps = [Instruction(id="i1", content="Verify account")]
    matrix.update_mapping(mapping_id, "instructions", steps)
    assert matrix.get_mapping(mapping_id).instructions == steps


# ==================== Resolution ====================

def make_problem(**kwargs) -> Problem:
    return Problem(
        id="p1",
        title="Customer unable to complete payment",
        title_ar="",
        category_id="customerSide",
        scenario_id="orderIssue",
        **kwargs
    )


def test_resolve_clear_returns_instructions_in_order_with_script():
    script = Script(id="1", title="Payment Failed - Card Declined", title_ar="", content="Hi [Customer Name]")
    instructions = [
        Instruction(id="i1", content="Verify customer payment method", order=1),
        Instruction(id="i2", content="Check transaction history", order=2),
    ]
    problem = make_problem(clear_path=ClearPath(id="c1", instructions=instructions, script=script))

    resolution = resolve_clear(problem)

    assert resolution.found
    assert resolution.instructions == instructions
    assert [i.id for i in resolution.instructions] == ["i1", "i2"]
    assert resolution.script is script


def test_resolve_clear_without_clear_path_is_empty_state():
    resolution = resolve_clear(make_problem(), Language.AR)
    assert not resolution.found
    assert resolution.instructions == []
    assert resolution.message


def test_resolve_unclear_miss_is_neutral_empty_state():
    matrix = build_matrix(["A"], ["X"])
    problem = make_problem(unclear_path=matrix.path)
    p, s = matrix.path.primary_options[0].id, matrix.path.secondary_options[0].id

    resolution = resolve_unclear(problem, p, s)

    assert not resolution.found
    assert resolution.message == "No classification configured yet for this combination."
    assert not resolve_unclear(make_problem(), "primary-x", "secondary-y").found


def test_resolve_unclear_returns_mapping_content():
    matrix = build_matrix(["A"], ["X"])
    matrix.generate_mappings()
    mapping = matrix.path.result_mappings[0]
    matrix.add_instruction(mapping.id, "Escalate to payments team", type=InstructionType.ACTION)
    problem = make_problem(unclear_path=matrix.path)

    resolution = resolve_unclear(problem, mapping.primary_option_id, mapping.secondary_option_id)

    assert resolution.found
    assert resolution.mapping_id == mapping.id
    assert [i.content for i in resolution.instructions] == ["Escalate to payments team"]


def test_new_matrix_starts_with_empty_path():
    path = ResolutionMatrix().path
    assert isinstance(path, UnclearPath)
    assert path.primary_options == [] and path.result_mappings == []
