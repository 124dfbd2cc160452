# rulepack.py – 규칙 팩(XML) 로드 · 교차 팩 참조 해석 · GUID 재매핑
"""
Rule packs are the XML bundles behind custom Sensitive Information Types.
An Entity references text processors (Regex, Keyword, Function, ...) through
``idRef``; in practice a pack exported from one tenant can reference a
processor that lives in a *sibling* pack, or a keyword dictionary that lives
outside any pack.

``resolve_rule_packs`` works in two passes:

1. catalog: every processor and every LocalizedStrings resource of every
   pack, keyed by id (first definition wins, differing redefinitions are
   reported as conflicts);
2. resolve: per pack, on a deep copy, inject the missing sibling processors
   and classify the remaining references as keyword dictionary, built-in,
   or unresolved.

Input trees are never mutated.
"""
import copy
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union
from xml.etree import ElementTree as ET

from errors import ValidationError
from utils import is_guid, normalize_id

logger = logging.getLogger(__name__)

RULEPACK_NS = "http://schemas.microsoft.com/office/2011/mce"
ET.register_namespace("", RULEPACK_NS)

PROCESSOR_TAGS = ("Regex", "Keyword", "Function", "Fingerprint", "ExtendedKeyword", "Dictionary")
ENTITY_TAGS = ("Entity", "Affinity")

# Microsoft 기본 제공 프로세서 (Func_credit_card, Keyword_cc_verification, ...)
BUILTIN_PATTERN = re.compile(r"^(Func_|Keyword_|Regex_|CEP_|Validator_|Fingerprint_)", re.IGNORECASE)

UTF16_BOMS = (b"\xff\xfe", b"\xfe\xff")
_XML_DECL = re.compile(r"^\s*<\?xml[^>]*\?>", re.IGNORECASE)


def _local(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _namespace(tag: str) -> str:
    return tag[1:].split("}", 1)[0] if tag.startswith("{") else ""


def _qname(ns: str, local: str) -> str:
    return f"{{{ns}}}{local}" if ns else local


def _first(root: ET.Element, local: str) -> Optional[ET.Element]:
    for el in root.iter():
        if _local(el.tag) == local:
            return el
    return None


def _children(parent: ET.Element, local: str) -> List[ET.Element]:
    return [c for c in parent if _local(c.tag) == local]


def _default_text(parent: ET.Element, local: str) -> str:
    nodes = _children(parent, local)
    for n in nodes:
        if (n.get("default") or "").lower() == "true":
            return (n.text or "").strip()
    return (nodes[0].text or "").strip() if nodes else ""


def _canonical(node: ET.Element) -> bytes:
    # 들여쓰기/공백 차이는 같은 내용으로 취급
    c = copy.deepcopy(node)
    for e in c.iter():
        e.text = (e.text or "").strip() or None
        e.tail = None
    return ET.tostring(c)


# ─────────────────────────────────────────────────────────
# 로드 / 직렬화
# ─────────────────────────────────────────────────────────
def _decode(data: Union[bytes, str]) -> str:
    if isinstance(data, str):
        text = data
    elif data[:2] in UTF16_BOMS:
        text = data.decode("utf-16")
    elif data[:3] == b"\xef\xbb\xbf":
        text = data.decode("utf-8-sig")
    elif data[1:2] == b"\x00":
        text = data.decode("utf-16-le")
    elif data[:1] == b"\x00":
        text = data.decode("utf-16-be")
    else:
        text = data.decode("utf-8")
    # 선언부 encoding 값은 실제 인코딩과 다를 수 있으므로 제거 후 파싱
    return _XML_DECL.sub("", text.lstrip("\ufeff"), count=1)


def check_encoding(raw: bytes) -> Optional[str]:
    """Return a validation message when the bytes are not UTF-16 with a BOM."""
    if raw[:2] in UTF16_BOMS:
        return None
    return "rule pack is not UTF-16 encoded with a byte order mark; the service rejects it"


def serialize(root: ET.Element) -> bytes:
    text = ET.tostring(root, encoding="unicode")
    return ('<?xml version="1.0" encoding="utf-16"?>\n' + text).encode("utf-16")


@dataclass(frozen=True)
class RulePack:
    root: ET.Element
    source: str = ""

    @property
    def pack_id(self) -> str:
        el = _first(self.root, "RulePack")
        return (el.get("id") or "") if el is not None else ""

    @property
    def publisher_id(self) -> str:
        el = _first(self.root, "Publisher")
        return (el.get("id") or "") if el is not None else ""

    @property
    def name(self) -> str:
        el = _first(self.root, "LocalizedDetails")
        return _default_text(el, "Name") if el is not None else ""

    @property
    def publisher_name(self) -> str:
        el = _first(self.root, "LocalizedDetails")
        return _default_text(el, "PublisherName") if el is not None else ""

    def entity_names(self) -> Dict[str, str]:
        return entity_names(self.root)

    def to_bytes(self) -> bytes:
        return serialize(self.root)


def load_rule_pack(data: Union[bytes, str], source: str = "") -> RulePack:
    try:
        root = ET.fromstring(_decode(data))
    except (ET.ParseError, UnicodeDecodeError) as e:
        raise ValidationError(f"{source or 'rule pack'}: malformed XML ({e})")
    if _local(root.tag) != "RulePackage":
        raise ValidationError(f"{source or 'rule pack'}: root element is <{_local(root.tag)}>, expected <RulePackage>")
    return RulePack(root=root, source=source)


def read_rule_pack(path: str) -> RulePack:
    with open(path, "rb") as f:
        return load_rule_pack(f.read(), source=path)


# ─────────────────────────────────────────────────────────
# 조회 헬퍼
# ─────────────────────────────────────────────────────────
def processors(root: ET.Element) -> List[ET.Element]:
    return [el for el in root.iter() if _local(el.tag) in PROCESSOR_TAGS and el.get("id")]


def referenced_ids(root: ET.Element) -> List[str]:
    """idRef values used by non-Resource elements, in document order."""
    out, seen = [], set()
    for el in root.iter():
        if _local(el.tag) == "Resource":
            continue
        ref = el.get("idRef")
        if ref and normalize_id(ref) not in seen:
            seen.add(normalize_id(ref))
            out.append(ref)
    return out


def defined_ids(root: ET.Element) -> set:
    return {el.get("id") for el in root.iter() if el.get("id")}


def entity_names(root: ET.Element) -> Dict[str, str]:
    """Entity id → default localized name, in document order."""
    ids = [el.get("id") for el in root.iter() if _local(el.tag) in ENTITY_TAGS and el.get("id")]
    wanted = set(ids)
    found: Dict[str, str] = {}
    for res in root.iter():
        if _local(res.tag) == "Resource" and res.get("idRef") in wanted:
            found.setdefault(res.get("idRef"), _default_text(res, "Name"))
    return {i: found.get(i, "") for i in ids}


def _has_resource(root: ET.Element, ref: str) -> bool:
    key = normalize_id(ref)
    return any(_local(el.tag) == "Resource" and normalize_id(el.get("idRef")) == key for el in root.iter())


# ─────────────────────────────────────────────────────────
# 1차: 카탈로그
# ─────────────────────────────────────────────────────────
@dataclass(frozen=True)
class ProcessorRef:
    processor_id: str
    kind: str
    node: ET.Element
    source_pack_id: str


@dataclass(frozen=True)
class ProcessorConflict:
    processor_id: str
    kept_pack_id: str
    ignored_pack_id: str


def catalog_processors(packs: Iterable[RulePack]) -> Tuple[Dict[str, ProcessorRef], List[ProcessorConflict]]:
    catalog: Dict[str, ProcessorRef] = {}
    conflicts: List[ProcessorConflict] = []
    for pack in packs:
        for node in processors(pack.root):
            pid = node.get("id")
            existing = catalog.get(normalize_id(pid))
            if existing is None:
                catalog[normalize_id(pid)] = ProcessorRef(pid, _local(node.tag), node, pack.pack_id)
            elif _canonical(existing.node) != _canonical(node):
                conflicts.append(ProcessorConflict(pid, existing.source_pack_id, pack.pack_id))
                logger.warning("processor %s defined differently in packs %s and %s; keeping the first",
                               pid, existing.source_pack_id, pack.pack_id)
    return catalog, conflicts


def catalog_resources(packs: Iterable[RulePack]) -> Dict[str, ET.Element]:
    resources: Dict[str, ET.Element] = {}
    for pack in packs:
        for el in pack.root.iter():
            if _local(el.tag) == "Resource" and el.get("idRef"):
                resources.setdefault(normalize_id(el.get("idRef")), el)
    return resources


# ─────────────────────────────────────────────────────────
# 2차: 해석
# ─────────────────────────────────────────────────────────
@dataclass
class PackResolution:
    pack_id: str
    name: str
    root: ET.Element
    source: str = ""
    injected: List[str] = field(default_factory=list)
    dictionary_refs: List[str] = field(default_factory=list)
    builtin_refs: List[str] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)

    @property
    def will_fail_import(self) -> bool:
        return bool(self.unresolved)

    def to_bytes(self) -> bytes:
        return serialize(self.root)

    def as_pack(self) -> RulePack:
        return RulePack(root=self.root, source=self.source)

    def as_report(self) -> Dict[str, object]:
        return {
            "RulePackId": self.pack_id,
            "Name": self.name,
            "InjectedProcessors": list(self.injected),
            "DictionaryReferences": list(self.dictionary_refs),
            "BuiltInReferences": list(self.builtin_refs),
            "UnresolvedReferences": list(self.unresolved),
            "WillFailImport": self.will_fail_import,
        }


@dataclass
class ResolutionResult:
    packs: List[PackResolution]
    conflicts: List[ProcessorConflict] = field(default_factory=list)

    @property
    def will_fail_import(self) -> bool:
        return any(p.will_fail_import for p in self.packs)

    @property
    def unresolved(self) -> Dict[str, List[str]]:
        return {p.pack_id: list(p.unresolved) for p in self.packs if p.unresolved}

    @property
    def dictionary_refs(self) -> List[str]:
        out: List[str] = []
        for p in self.packs:
            for ref in p.dictionary_refs:
                if normalize_id(ref) not in {normalize_id(r) for r in out}:
                    out.append(ref)
        return out


def _inject(root: ET.Element, proc: ProcessorRef, resources: Mapping[str, ET.Element]) -> None:
    rules = _first(root, "Rules")
    if rules is None:
        rules = ET.SubElement(root, _qname(_namespace(root.tag), "Rules"))
    strings = next(iter(_children(rules, "LocalizedStrings")), None)

    node = copy.deepcopy(proc.node)
    if strings is not None:
        rules.insert(list(rules).index(strings), node)
    else:
        rules.append(node)

    res = resources.get(normalize_id(proc.processor_id))
    if res is not None and not _has_resource(root, proc.processor_id):
        if strings is None:
            strings = ET.SubElement(rules, _qname(_namespace(rules.tag), "LocalizedStrings"))
        strings.append(copy.deepcopy(res))


def _resolve_one(pack: RulePack,
                 catalog: Mapping[str, ProcessorRef],
                 resources: Mapping[str, ET.Element],
                 dictionary_keys: set,
                 builtin_pattern) -> PackResolution:
    root = copy.deepcopy(pack.root)
    result = PackResolution(pack_id=pack.pack_id, name=pack.name, root=root, source=pack.source)
    classified = set()

    # 주입된 노드가 다시 참조를 가질 수 있으므로 더 이상 변화가 없을 때까지 반복
    while True:
        defined = {normalize_id(i) for i in defined_ids(root)}
        pending = [r for r in referenced_ids(root)
                   if normalize_id(r) not in defined and normalize_id(r) not in classified]
        if not pending:
            break
        for ref in pending:
            classified.add(normalize_id(ref))
            proc = catalog.get(normalize_id(ref))
            if proc is not None:
                _inject(root, proc, resources)
                result.injected.append(ref)
                logger.debug("pack %s: injected %s %s from pack %s", pack.pack_id, proc.kind, ref, proc.source_pack_id)
            elif normalize_id(ref) in dictionary_keys:
                result.dictionary_refs.append(ref)
            elif builtin_pattern.match(ref):
                result.builtin_refs.append(ref)
            else:
                result.unresolved.append(ref)

    for ref in result.unresolved:
        logger.error("pack %s (%s): reference %s is not defined in any pack, dictionary or built-in set; import will fail",
                     pack.pack_id, pack.name, ref)
    return result


def resolve_rule_packs(packs: Iterable[RulePack],
                       dictionaries: Union[Mapping[str, object], Iterable[str], None] = None,
                       builtin_pattern=BUILTIN_PATTERN) -> ResolutionResult:
    """Resolve N packs into N self-contained documents plus a reference report."""
    packs = list(packs)
    catalog, conflicts = catalog_processors(packs)
    resources = catalog_resources(packs)
    dictionary_keys = {normalize_id(k) for k in (dictionaries or ())}
    resolved = [_resolve_one(p, catalog, resources, dictionary_keys, builtin_pattern) for p in packs]
    return ResolutionResult(packs=resolved, conflicts=conflicts)


# ─────────────────────────────────────────────────────────
# GUID 재매핑
# ─────────────────────────────────────────────────────────
def remap_ids(root: ET.Element, mapping) -> ET.Element:
    """Copy of ``root`` with every ``id``/``idRef`` found in ``mapping`` rewritten."""
    if hasattr(mapping, "as_dict"):
        mapping = mapping.as_dict()
    lookup = {normalize_id(k): v for k, v in mapping.items()}
    out = copy.deepcopy(root)
    if not lookup:
        return out
    for el in out.iter():
        for attr in ("id", "idRef"):
            value = el.get(attr)
            if value is None:
                continue
            new = lookup.get(normalize_id(value))
            if new is not None:
                el.set(attr, new)
    return out


def regenerate_ids(root: ET.Element) -> Tuple[ET.Element, Dict[str, str]]:
    """Fresh GUIDs for the pack, publisher, entities and GUID-named processors."""
    mapping: Dict[str, str] = {}
    kinds = ("RulePack", "Publisher") + ENTITY_TAGS + PROCESSOR_TAGS
    for el in root.iter():
        value = el.get("id")
        if _local(el.tag) in kinds and is_guid(value) and value not in mapping:
            mapping[value] = str(uuid.uuid4())
    return remap_ids(root, mapping), mapping
