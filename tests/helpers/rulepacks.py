from __future__ import annotations

from typing import Iterable, Sequence, Tuple
from xml.sax.saxutils import escape

from rulepack import RULEPACK_NS

# (entity id, display name, [idRef, ...]); first idRef is the IdMatch
EntityDef = Tuple[str, str, Sequence[str]]
# (tag, id, body)
ProcessorDef = Tuple[str, str, str]


def regex(pid: str, pattern: str) -> ProcessorDef:
    return ("Regex", pid, escape(pattern))


def keyword(pid: str, *terms: str) -> ProcessorDef:
    body = "".join(f"<Term>{escape(t)}</Term>" for t in terms)
    return ("Keyword", pid, f'<Group matchStyle="word">{body}</Group>')


def _entity(eid: str, refs: Sequence[str]) -> str:
    first, rest = refs[0], refs[1:]
    matches = "".join(f'<Match idRef="{r}"/>' for r in rest)
    return (f'<Entity id="{eid}" patternsProximity="300" recommendedConfidence="85">'
            f'<Pattern confidenceLevel="85"><IdMatch idRef="{first}"/>{matches}</Pattern></Entity>')


def _processor(item: ProcessorDef) -> str:
    tag, pid, body = item
    return f'<{tag} id="{pid}">{body}</{tag}>'


def _resource(eid: str, name: str) -> str:
    return (f'<Resource idRef="{eid}"><Name default="true" langcode="en-us">{escape(name)}</Name>'
            f'<Description default="true" langcode="en-us">{escape(name)}</Description></Resource>')


def rule_pack_xml(pack_id: str, name: str, entities: Iterable[EntityDef],
                  processors: Iterable[ProcessorDef] = (), publisher: str = "Contoso",
                  publisher_id: str = "7e6f9b51-0b5a-4c36-9c4e-2f5a0c6d8e01") -> str:
    entities = list(entities)
    return (
        f'<?xml version="1.0" encoding="utf-16"?>'
        f'<RulePackage xmlns="{RULEPACK_NS}">'
        f'<RulePack id="{pack_id}"><Version major="1" minor="0" build="0" revision="0"/>'
        f'<Publisher id="{publisher_id}"/>'
        f'<Details defaultLangCode="en-us"><LocalizedDetails langcode="en-us">'
        f'<PublisherName>{escape(publisher)}</PublisherName><Name>{escape(name)}</Name>'
        f'<Description>{escape(name)}</Description></LocalizedDetails></Details></RulePack>'
        f'<Rules>'
        + "".join(_entity(eid, refs) for eid, _, refs in entities)
        + "".join(_processor(p) for p in processors)
        + '<LocalizedStrings>'
        + "".join(_resource(eid, ename) for eid, ename, _ in entities)
        + '</LocalizedStrings></Rules></RulePackage>'
    )


def with_resource(xml: str, idref: str, name: str) -> str:
    """Append a LocalizedStrings Resource for ``idref`` to a pack built by ``rule_pack_xml``."""
    return xml.replace("</LocalizedStrings>", _resource(idref, name) + "</LocalizedStrings>", 1)
