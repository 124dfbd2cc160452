from __future__ import annotations

import copy
import re
from xml.etree import ElementTree as ET

import pytest

from errors import ValidationError
from guid_map import GuidMap
from rulepack import (
    BUILTIN_PATTERN, catalog_processors, check_encoding, defined_ids, entity_names, load_rule_pack, processors,
    referenced_ids, regenerate_ids, remap_ids, resolve_rule_packs,
)

from .helpers.rulepacks import keyword, regex, rule_pack_xml, with_resource

PACK_A = "11111111-aaaa-4aaa-8aaa-000000000001"
PACK_B = "11111111-bbbb-4bbb-8bbb-000000000002"
PACK_C = "11111111-cccc-4ccc-8ccc-000000000003"
DICT_ID = "d1c7d1c7-0000-4000-8000-00000000d1c7"


def _pack(pack_id, name, entities, processors=()):
    return load_rule_pack(rule_pack_xml(pack_id, name, entities, processors))


def _a():
    return _pack(PACK_A, "Pack A",
                 [("e-a1", "Employee ID", ["Regex_employee_id"]),
                  ("e-a2", "Project Code", ["Regex_project", "Keyword_project"])],
                 [regex("Regex_employee_id", r"EMP\d{6}"), regex("Regex_project", r"PRJ-\d{4}"),
                  keyword("Keyword_project", "project", "codename")])


def _b_cross():
    return _pack(PACK_B, "Pack B", [("e-b1", "Employee Badge", ["Regex_employee_id", "Keyword_project"])])


def _assert_closed(root, dictionaries=()):
    defined = defined_ids(root)
    dicts = {d.lower() for d in dictionaries}
    for ref in referenced_ids(root):
        assert ref in defined or ref.lower() in dicts or BUILTIN_PATTERN.match(ref), ref


def test_cross_pack_reference_is_injected():
    result = resolve_rule_packs([_a(), _b_cross()])
    b = result.packs[1]
    assert b.injected == ["Regex_employee_id", "Keyword_project"]
    assert not b.will_fail_import
    _assert_closed(b.root)
    injected = [el for el in b.root.iter() if el.get("id") == "Regex_employee_id"]
    assert len(injected) == 1
    assert injected[0].text == r"EMP\d{6}"


def test_injected_processor_sits_before_localized_strings():
    b = resolve_rule_packs([_a(), _b_cross()]).packs[1]
    rules = [el for el in b.root.iter() if el.tag.endswith("}Rules")][0]
    tags = [c.tag.rsplit("}", 1)[-1] for c in rules]
    assert tags[-1] == "LocalizedStrings"
    assert tags.index("Regex") < tags.index("LocalizedStrings")


def test_self_contained_pack_is_unchanged():
    pack = _a()
    res = resolve_rule_packs([pack]).packs[0]
    assert res.injected == []
    assert ET.tostring(res.root) == ET.tostring(pack.root)


def test_resolving_resolved_output_injects_nothing():
    first = resolve_rule_packs([_a(), _b_cross()])
    second = resolve_rule_packs([p.as_pack() for p in first.packs])
    assert all(p.injected == [] for p in second.packs)
    assert [ET.tostring(p.root) for p in second.packs] == [ET.tostring(p.root) for p in first.packs]


def test_dictionary_reference_is_never_injected():
    pack = _pack(PACK_C, "Pack C", [("e-c1", "Customer", ["Regex_customer", DICT_ID])],
                 [regex("Regex_customer", r"CUST\d+")])
    res = resolve_rule_packs([pack], dictionaries=[DICT_ID.upper()]).packs[0]
    assert res.dictionary_refs == [DICT_ID]
    assert res.unresolved == []
    assert DICT_ID not in defined_ids(res.root)
    _assert_closed(res.root, dictionaries=[DICT_ID])


def test_builtin_reference_is_accepted():
    pack = _pack(PACK_C, "Pack C", [("e-c1", "Card", ["Func_credit_card", "Keyword_cc_verification"])])
    res = resolve_rule_packs([pack]).packs[0]
    assert res.builtin_refs == ["Func_credit_card", "Keyword_cc_verification"]
    assert not res.will_fail_import


def test_unresolved_reference_flags_only_its_pack():
    broken = _pack(PACK_C, "Pack C", [("e-c1", "Broken", ["missing_processor"])])
    result = resolve_rule_packs([_a(), _b_cross(), broken])
    assert result.will_fail_import
    assert result.unresolved == {PACK_C: ["missing_processor"]}
    assert result.packs[1].injected == ["Regex_employee_id", "Keyword_project"]
    assert not result.packs[1].will_fail_import
    assert result.packs[2].as_report()["WillFailImport"] is True


def test_conflicting_definitions_keep_first_writer():
    other = _pack(PACK_C, "Pack C", [("e-c1", "Other Employee", ["Regex_employee_id"])],
                  [regex("Regex_employee_id", r"E\d{4}")])
    consumer = _pack("11111111-dddd-4ddd-8ddd-000000000004", "Pack D",
                     [("e-d1", "Consumer", ["Regex_employee_id"])])
    result = resolve_rule_packs([_a(), other, consumer])
    assert len(result.conflicts) == 1
    conflict = result.conflicts[0]
    assert (conflict.processor_id, conflict.kept_pack_id, conflict.ignored_pack_id) == (
        "Regex_employee_id", PACK_A, PACK_C)
    node = [el for el in result.packs[2].root.iter() if el.get("id") == "Regex_employee_id"][0]
    assert node.text == r"EMP\d{6}"


def test_identical_redefinition_is_not_a_conflict():
    twin = _pack(PACK_C, "Pack C", [("e-c1", "Twin", ["Regex_employee_id"])],
                 [regex("Regex_employee_id", r"EMP\d{6}")])
    _, conflicts = catalog_processors([_a(), twin])
    assert conflicts == []


MIXED_PID = "0b0b0b0b-0000-4000-8000-000000000002"


def _resources(root, ref):
    return [el for el in root.iter() if el.tag.endswith("}Resource") and el.get("idRef") == ref]


def test_processor_reference_in_same_pack_ignores_case():
    pack = _pack(PACK_C, "Pack C", [("e-c1", "Customer", [MIXED_PID.upper()])], [regex(MIXED_PID, r"C\d+")])
    res = resolve_rule_packs([pack]).packs[0]
    assert res.injected == []
    assert res.unresolved == []
    assert not res.will_fail_import


def test_processor_reference_across_packs_ignores_case():
    owner = _pack(PACK_A, "Pack A", [("e-a1", "Customer", [MIXED_PID])], [regex(MIXED_PID, r"C\d+")])
    consumer = _pack(PACK_B, "Pack B", [("e-b1", "Customer copy", [MIXED_PID.upper()])])
    res = resolve_rule_packs([owner, consumer]).packs[1]
    assert res.injected == [MIXED_PID.upper()]
    assert res.unresolved == []
    assert [p.get("id") for p in processors(res.root)] == [MIXED_PID]


def test_injected_processor_brings_its_resource():
    owner = load_rule_pack(with_resource(
        rule_pack_xml(PACK_A, "Pack A", [("e-a1", "Employee ID", ["Regex_employee_id"])],
                      [regex("Regex_employee_id", r"EMP\d{6}")]),
        "Regex_employee_id", "Employee number pattern"))
    consumer = _pack(PACK_B, "Pack B", [("e-b1", "Employee Badge", ["Regex_employee_id"])])
    res = resolve_rule_packs([owner, consumer]).packs[1]
    copied = _resources(res.root, "Regex_employee_id")
    assert len(copied) == 1
    assert entity_names(res.root) == {"e-b1": "Employee Badge"}


def test_existing_resource_is_not_duplicated():
    owner = load_rule_pack(with_resource(
        rule_pack_xml(PACK_A, "Pack A", [("e-a1", "Employee ID", ["Regex_employee_id"])],
                      [regex("Regex_employee_id", r"EMP\d{6}")]),
        "Regex_employee_id", "Employee number pattern"))
    consumer = load_rule_pack(with_resource(
        rule_pack_xml(PACK_B, "Pack B", [("e-b1", "Employee Badge", ["Regex_employee_id"])]),
        "Regex_employee_id", "Badge pattern"))
    res = resolve_rule_packs([owner, consumer]).packs[1]
    assert res.injected == ["Regex_employee_id"]
    assert len(_resources(res.root, "Regex_employee_id")) == 1


def test_injection_reaches_fixpoint():
    owner = _pack(PACK_A, "Pack A", [("e-a1", "Combined", ["Func_combined"])],
                  [("Function", "Func_combined", '<Match idRef="Regex_inner"/>'), regex("Regex_inner", r"IN\d+")])
    consumer = _pack(PACK_B, "Pack B", [("e-b1", "Combined copy", ["Func_combined"])])
    result = resolve_rule_packs([owner, consumer], builtin_pattern=re.compile(r"^Func_builtin_"))
    res = result.packs[1]
    assert res.injected == ["Func_combined", "Regex_inner"]
    assert res.unresolved == []
    _assert_closed(res.root)


def test_inputs_are_not_mutated():
    packs = [_a(), _b_cross()]
    before = [ET.tostring(p.root) for p in packs]
    resolve_rule_packs(packs)
    assert [ET.tostring(p.root) for p in packs] == before


def test_entity_names_in_document_order():
    assert entity_names(_a().root) == {"e-a1": "Employee ID", "e-a2": "Project Code"}
    assert _a().name == "Pack A"
    assert _a().publisher_name == "Contoso"


def test_remap_ids_is_case_insensitive():
    pack = _pack(PACK_C, "Pack C", [("e-c1", "Customer", [DICT_ID])])
    gm = GuidMap()
    gm.record(DICT_ID.upper(), "f00df00d-0000-4000-8000-00000000f00d", kind="dictionary")
    root = remap_ids(pack.root, gm)
    assert "f00df00d-0000-4000-8000-00000000f00d" in referenced_ids(root)
    assert DICT_ID in referenced_ids(pack.root)


def test_regenerate_ids_keeps_references_consistent():
    eid = "0a0a0a0a-0000-4000-8000-000000000001"
    pid = "0b0b0b0b-0000-4000-8000-000000000002"
    pack = _pack(PACK_C, "Pack C", [(eid, "Customer", [pid])], [regex(pid, r"C\d+")])
    root, mapping = regenerate_ids(copy.deepcopy(pack.root))
    assert set(mapping) == {PACK_C, "7e6f9b51-0b5a-4c36-9c4e-2f5a0c6d8e01", eid, pid}
    new_pack = load_rule_pack(ET.tostring(root, encoding="unicode"))
    assert new_pack.pack_id == mapping[PACK_C]
    assert list(entity_names(root)) == [mapping[eid]]
    _assert_closed(root)


def test_serialized_pack_is_utf16_with_bom():
    raw = _a().to_bytes()
    assert raw[:2] in (b"\xff\xfe", b"\xfe\xff")
    assert check_encoding(raw) is None
    assert load_rule_pack(raw).pack_id == PACK_A


def test_declaration_that_disagrees_with_encoding_still_loads():
    raw = rule_pack_xml(PACK_A, "Pack A", [("e-1", "X", ["Func_ssn"])]).encode("utf-8")
    assert check_encoding(raw) is not None
    assert load_rule_pack(raw).pack_id == PACK_A


@pytest.mark.parametrize("payload", [b"<RulePackage", "<Other/>"])
def test_bad_documents_raise_validation_error(payload):
    with pytest.raises(ValidationError):
        load_rule_pack(payload, source="bad.xml")
