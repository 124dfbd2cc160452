# dictionaries.py – 키워드 사전(Keyword Dictionary) 조회 · 사이드카 파일 · 대상 테넌트 재생성
import glob
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from compliance import file_data
from errors import NotFoundError, ValidationError
from utils import normalize_id, read_json, safe_filename, safe_text, utc_now_iso, write_json

logger = logging.getLogger(__name__)

SIDECAR_SUFFIX = ".dictionary.json"
TERMS_SUFFIX = ".terms.txt"


def _parse_terms(raw) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [safe_text(t) for t in raw]
    else:
        text = safe_text(raw)
        items = text.splitlines() if "\n" in text else text.split(",")
    return [t.strip() for t in items if t and t.strip()]


@dataclass
class KeywordDictionary:
    identity: str
    name: str
    description: str = ""
    terms: List[str] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: Dict) -> "KeywordDictionary":
        """Get-DlpKeywordDictionary 결과 1건 → KeywordDictionary"""
        return cls(
            identity=safe_text(record.get("Identity") or record.get("Guid")),
            name=safe_text(record.get("Name")),
            description=safe_text(record.get("Description")),
            terms=_parse_terms(record.get("KeywordDictionary")),
        )

    def terms_text(self) -> str:
        return "\n".join(self.terms)

    def base_name(self) -> str:
        return f"{safe_filename(self.name, 'dictionary')}_{safe_filename(self.identity)[:8]}"


def fetch_dictionaries(session) -> List[KeywordDictionary]:
    return [KeywordDictionary.from_record(r) for r in session.invoke("Get-DlpKeywordDictionary")]


def index_dictionaries(items: Iterable[KeywordDictionary]) -> Dict[str, KeywordDictionary]:
    return {normalize_id(d.identity): d for d in items if d.identity}


# ─────────────────────────────────────────────────────────
# 사이드카 (JSON 메타데이터 + 용어 목록)
# ─────────────────────────────────────────────────────────
def write_sidecar(dictionary: KeywordDictionary, out_dir: str):
    """Write ``<name>.dictionary.json`` and ``<name>.terms.txt``; return both paths."""
    os.makedirs(out_dir, exist_ok=True)
    base = dictionary.base_name()
    terms_path = os.path.join(out_dir, base + TERMS_SUFFIX)
    with open(terms_path, "w", encoding="utf-8", newline="\n") as f:
        f.write(dictionary.terms_text())
    meta_path = write_json(os.path.join(out_dir, base + SIDECAR_SUFFIX), {
        "Identity": dictionary.identity,
        "Name": dictionary.name,
        "Description": dictionary.description,
        "TermCount": len(dictionary.terms),
        "TermsFile": os.path.basename(terms_path),
        "ExportedAt": utc_now_iso(),
    })
    return meta_path, terms_path


def read_sidecar(meta_path: str) -> KeywordDictionary:
    meta = read_json(meta_path)
    terms_file = meta.get("TermsFile") or os.path.basename(meta_path)[: -len(SIDECAR_SUFFIX)] + TERMS_SUFFIX
    terms_path = os.path.join(os.path.dirname(meta_path), terms_file)
    if not os.path.exists(terms_path):
        raise ValidationError(f"terms file missing for dictionary '{meta.get('Name')}': {terms_path}",
                              ids=[meta.get("Identity", "")])
    with open(terms_path, "r", encoding="utf-8-sig") as f:
        terms = _parse_terms(f.read().split("\n"))
    expected = meta.get("TermCount")
    if expected is not None and int(expected) != len(terms):
        raise ValidationError(
            f"dictionary '{meta.get('Name')}' has {len(terms)} terms, sidecar says {expected}",
            ids=[meta.get("Identity", "")])
    return KeywordDictionary(identity=meta.get("Identity", ""), name=meta.get("Name", ""),
                             description=meta.get("Description", ""), terms=terms)


def read_sidecars(in_dir: str) -> List[KeywordDictionary]:
    if not os.path.isdir(in_dir):
        return []
    return [read_sidecar(p) for p in sorted(glob.glob(os.path.join(in_dir, "*" + SIDECAR_SUFFIX)))]


# ─────────────────────────────────────────────────────────
# 대상 테넌트
# ─────────────────────────────────────────────────────────
def find_dictionary(session, name: str) -> Optional[KeywordDictionary]:
    try:
        rows = session.invoke("Get-DlpKeywordDictionary", Name=name)
    except NotFoundError:
        return None
    for r in rows:
        if safe_text(r.get("Name")).lower() == name.lower():
            return KeywordDictionary.from_record(r)
    return None


def ensure_dictionary(session, dictionary: KeywordDictionary, force: bool = False) -> str:
    """Return the target identity of ``dictionary``, creating it when missing."""
    payload = file_data(dictionary.terms_text().encode("utf-16"))
    existing = find_dictionary(session, dictionary.name)
    if existing is not None:
        if force:
            logger.info("updating keyword dictionary '%s' (%d terms)", dictionary.name, len(dictionary.terms))
            session.invoke("Set-DlpKeywordDictionary", Identity=existing.identity, FileData=payload,
                           Description=dictionary.description or dictionary.name)
        else:
            logger.info("keyword dictionary '%s' already exists on target; reusing %s", dictionary.name, existing.identity)
        return existing.identity

    logger.info("creating keyword dictionary '%s' (%d terms)", dictionary.name, len(dictionary.terms))
    rows = session.invoke("New-DlpKeywordDictionary", Name=dictionary.name,
                          Description=dictionary.description or dictionary.name, FileData=payload)
    if rows and rows[0].get("Identity"):
        return safe_text(rows[0]["Identity"])
    created = find_dictionary(session, dictionary.name)
    if created is None:
        raise NotFoundError(f"keyword dictionary '{dictionary.name}' not visible after creation",
                            cmdlet="New-DlpKeywordDictionary")
    return created.identity
