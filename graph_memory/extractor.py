"""Entity and relation extraction for conversational exchanges.

Regex + heuristic NER (no torch / spaCy / heavy ML):
* Capitalised-phrase candidates with a stop-word filter
* Known technology vocabulary (matched case-insensitively)
* Gazetteer matching against entities already in the graph
* Typed relation patterns ("Alice visited Paris" → visited)
* Pairwise co-occurrences for every exchange

The graph store only depends on the shapes defined here; any object that
satisfies :class:`Extractor` can replace :class:`PatternExtractor`.
"""

from __future__ import annotations

import itertools
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

logger = logging.getLogger(__name__)

RELATION_CONFIDENCE = 0.8


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class EntityMention:
    """An entity surfaced from text."""
    name: str
    type: str = "CONCEPT"  # PERSON, PLACE, ORG, TECH, CONCEPT


@dataclass
class ExtractedTriple:
    subject: str
    predicate: str
    object: str
    confidence: float = RELATION_CONFIDENCE


@dataclass
class Extraction:
    """Everything pulled out of one exchange, ready for ``write_exchange``."""
    entities: List[EntityMention] = field(default_factory=list)
    triples: List[ExtractedTriple] = field(default_factory=list)
    cooccurrences: List[Tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": [{"name": e.name, "type": e.type} for e in self.entities],
            "triples": [
                {"subject": t.subject, "predicate": t.predicate,
                 "object": t.object, "confidence": t.confidence}
                for t in self.triples
            ],
            "cooccurrences": [list(pair) for pair in self.cooccurrences],
        }


class Extractor(Protocol):
    def extract_entities(self, text: str) -> List[EntityMention]: ...

    def match_gazetteer(self, text: str, known_entities: Iterable[Any]) -> List[EntityMention]: ...

    def extract_from_exchange(
        self,
        messages: Sequence[Dict[str, Any]],
        known_entities: Optional[Iterable[Any]] = None,
    ) -> Extraction: ...


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

# Capitalised words that start sentences rather than name things
STOP_WORDS = {
    "A", "An", "The", "I", "I'm", "I've", "I'd", "I'll", "Me", "My", "We", "Our",
    "You", "Your", "He", "She", "His", "Her", "They", "Their", "It", "Its",
    "This", "That", "These", "Those", "There", "Here",
    "What", "Who", "Whom", "Where", "When", "Why", "How", "Which",
    "Is", "Are", "Was", "Were", "Be", "Do", "Does", "Did", "Can", "Could",
    "Would", "Should", "Will", "Shall", "May", "Might", "Must", "Have", "Has", "Had",
    "Tell", "Show", "Give", "Let", "Please", "Remember", "Recall", "Find", "Explain",
    "And", "But", "Or", "So", "If", "Then", "Also", "Because", "After", "Before",
    "Yes", "No", "Not", "Ok", "Okay", "Sure", "Hi", "Hello", "Hey", "Thanks", "Thank",
    "Today", "Tomorrow", "Yesterday", "Now", "Last", "Next", "Every",
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
}

KNOWN_TECH: Dict[str, str] = {
    "python": "Python", "javascript": "JavaScript", "typescript": "TypeScript",
    "node.js": "Node.js", "react": "React", "sqlite": "SQLite",
    "postgres": "Postgres", "postgresql": "PostgreSQL", "redis": "Redis",
    "docker": "Docker", "kubernetes": "Kubernetes", "linux": "Linux",
    "git": "Git", "github": "GitHub", "fastapi": "FastAPI", "uvicorn": "Uvicorn",
    "nginx": "Nginx", "systemd": "systemd",
}

KNOWN_PLACES = {
    "paris", "london", "berlin", "tokyo", "new york", "istanbul", "rome",
    "madrid", "amsterdam", "singapore", "france", "germany", "japan", "italy",
}

KNOWN_ORGS = {
    "google", "apple", "microsoft", "openai", "anthropic", "meta", "amazon",
}

_NAME = r"[A-Z][\w'+#-]*(?:[ \t]+[A-Z][\w'+#-]*)*"
_CANDIDATE_RE = re.compile(r"(?<![\w'])" + _NAME)
_TECH_RE = re.compile(
    r"(?<![\w.])(" + "|".join(re.escape(k) for k in sorted(KNOWN_TECH, key=len, reverse=True)) + r")(?![\w])",
    re.IGNORECASE,
)

# predicate → (verb phrases, subject type, object type)
RELATION_PATTERNS: Dict[str, Tuple[List[str], Optional[str], Optional[str]]] = {
    "visited": (["visited", "went to", "traveled to", "travelled to", "flew to"], "PERSON", "PLACE"),
    "lives_in": (["lives in", "lived in", "moved to", "is based in"], "PERSON", "PLACE"),
    "works_at": (["works at", "works for", "worked at", "worked for", "joined"], "PERSON", "ORG"),
    "uses": (["uses", "used", "is using", "switched to"], None, "TECH"),
    "knows": (["knows", "met", "is friends with", "talked to"], "PERSON", "PERSON"),
    "created_by": (["was created by", "was built by", "was written by", "was founded by"], None, "PERSON"),
    "member_of": (["is a member of", "is part of", "belongs to"], None, "ORG"),
    "located_in": (["is located in", "is in"], None, "PLACE"),
    "prefers": (["prefers", "likes", "loves"], "PERSON", None),
}

_RELATION_RES: List[Tuple[str, re.Pattern, Optional[str], Optional[str]]] = [
    (
        predicate,
        re.compile(
            r"(?<![\w'])(?P<subject>" + _NAME + r")\s+(?:"
            + "|".join(re.escape(p).replace(r"\ ", r"\s+") for p in phrases)
            + r")\s+(?:the\s+)?(?P<object>" + _NAME + r")"
        ),
        subject_type,
        object_type,
    )
    for predicate, (phrases, subject_type, object_type) in RELATION_PATTERNS.items()
]

_CONTEXT_BLOCK_RE = re.compile(
    r"<(?P<tag>[\w-]+-context|relevant-memories)\b[^>]*>.*?</(?P=tag)>",
    re.DOTALL | re.IGNORECASE,
)
_FENCED_RECALL_RE = re.compile(
    r"```(?:recall|memory|memories|context)\b.*?```", re.DOTALL | re.IGNORECASE
)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def message_text(message: Optional[Dict[str, Any]]) -> str:
    """Flatten a chat message's content (plain string or typed parts) to text."""
    if not message:
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
            elif isinstance(part, str):
                parts.append(part)
        return "\n".join(p for p in parts if p)
    return ""


def strip_context_blocks(text: str) -> str:
    """Remove injected ``<…-context>`` blocks and fenced recall blocks."""
    if not text:
        return ""
    text = _CONTEXT_BLOCK_RE.sub("", text)
    text = _FENCED_RECALL_RE.sub("", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _clean_name(raw: str) -> str:
    words = raw.split()
    while words and words[0] in STOP_WORDS:
        words.pop(0)
    while words and words[-1] in STOP_WORDS:
        words.pop()
    name = " ".join(words)
    name = re.sub(r"'s$", "", name).strip("'-")
    return name if len(name) >= 2 else ""


def _known_type(name: str) -> Optional[str]:
    key = name.lower()
    if key in KNOWN_TECH:
        return "TECH"
    if key in KNOWN_PLACES:
        return "PLACE"
    if key in KNOWN_ORGS:
        return "ORG"
    return None


def _merge(target: List[EntityMention], seen: Dict[str, EntityMention], mentions: Iterable[EntityMention]) -> None:
    """Append mentions not yet present (case-insensitive, first occurrence wins)."""
    for mention in mentions:
        key = mention.name.lower()
        if key in seen:
            existing = seen[key]
            if existing.type == "CONCEPT" and mention.type != "CONCEPT":
                existing.type = mention.type
            continue
        seen[key] = mention
        target.append(mention)


# ---------------------------------------------------------------------------
# Default extractor
# ---------------------------------------------------------------------------

class PatternExtractor:
    """Pattern-based extractor used by ingest and search."""

    def __init__(self, max_entities_per_exchange: int = 25, min_text_length: int = 3) -> None:
        self.max_entities_per_exchange = max_entities_per_exchange
        self.min_text_length = min_text_length

    def extract_entities(self, text: str) -> List[EntityMention]:
        """Capitalised phrases and known technology names, in order of appearance."""
        if not text or len(text.strip()) < self.min_text_length:
            return []

        found: List[Tuple[int, EntityMention]] = []
        for match in _CANDIDATE_RE.finditer(text):
            name = _clean_name(match.group(0))
            if name:
                found.append((match.start(), EntityMention(name, _known_type(name) or "CONCEPT")))
        for match in _TECH_RE.finditer(text):
            found.append((match.start(), EntityMention(KNOWN_TECH[match.group(1).lower()], "TECH")))

        found.sort(key=lambda item: item[0])
        result: List[EntityMention] = []
        _merge(result, {}, (mention for _, mention in found))
        return result

    def match_gazetteer(self, text: str, known_entities: Iterable[Any]) -> List[EntityMention]:
        """Whole-word, case-insensitive matches of known entity names in *text*.

        *known_entities* may hold entity rows (``canonical_name`` /
        ``entity_type``), ``{"name", "type"}`` dicts or plain strings.
        """
        if not text:
            return []
        matches: List[EntityMention] = []
        for known in known_entities or []:
            if isinstance(known, str):
                name, etype = known, "CONCEPT"
            else:
                name = known.get("canonical_name") or known.get("name") or ""
                etype = known.get("entity_type") or known.get("type") or "CONCEPT"
            if len(name.strip()) < 2:
                continue
            pattern = r"(?<!\w)" + re.escape(name.strip()) + r"(?!\w)"
            if re.search(pattern, text, re.IGNORECASE):
                matches.append(EntityMention(name.strip(), etype))
        return matches

    def extract_relations(self, text: str) -> List[Tuple[ExtractedTriple, Optional[str], Optional[str]]]:
        """Typed relations with the entity types they imply for subject/object."""
        relations = []
        for predicate, regex, subject_type, object_type in _RELATION_RES:
            for match in regex.finditer(text):
                subject = _clean_name(match.group("subject"))
                obj = _clean_name(match.group("object"))
                if not subject or not obj or subject.lower() == obj.lower():
                    continue
                relations.append((ExtractedTriple(subject, predicate, obj), subject_type, object_type))
        return relations

    def extract_from_exchange(
        self,
        messages: Sequence[Dict[str, Any]],
        known_entities: Optional[Iterable[Any]] = None,
    ) -> Extraction:
        """Extract entities, triples and co-occurrences from one exchange."""
        texts = [
            strip_context_blocks(message_text(m))
            for m in messages
            if m and m.get("role") in ("user", "assistant")
        ]
        texts = [t for t in texts if t]
        if not texts:
            return Extraction()

        entities: List[EntityMention] = []
        seen: Dict[str, EntityMention] = {}
        triples: Dict[Tuple[str, str, str], ExtractedTriple] = {}

        for text in texts:
            for triple, subject_type, object_type in self.extract_relations(text):
                _merge(entities, seen, [
                    EntityMention(triple.subject, _known_type(triple.subject) or subject_type or "CONCEPT"),
                    EntityMention(triple.object, _known_type(triple.object) or object_type or "CONCEPT"),
                ])
                key = (triple.subject.lower(), triple.predicate, triple.object.lower())
                if key not in triples or triples[key].confidence < triple.confidence:
                    triples[key] = triple
            _merge(entities, seen, self.extract_entities(text))

        _merge(entities, seen, self.match_gazetteer("\n".join(texts), known_entities or []))

        if len(entities) > self.max_entities_per_exchange:
            logger.debug(
                "Capping exchange entities: %d → %d", len(entities), self.max_entities_per_exchange
            )
            entities = entities[: self.max_entities_per_exchange]

        cooccurrences = [
            (a.name, b.name) for a, b in itertools.combinations(entities, 2)
        ]
        return Extraction(
            entities=entities,
            triples=list(triples.values()),
            cooccurrences=cooccurrences,
        )
