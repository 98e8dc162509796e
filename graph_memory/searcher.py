"""Link-expansion retrieval over the knowledge graph.

Given free query text:
1. **Entities**    : extractor NER + gazetteer matches against known entities
2. **Direct hop**  : every triple touching a query entity credits its source
                      exchange with the triple's confidence
3. **Co-occurrence**: the top co-occurring entities of each query entity
                      credit their exchanges with ``boost × count``
4. **Gate + rank** : exchanges sharing too few query entities are dropped,
                      the rest ranked by score (exchange id breaks ties)

Single hop only; the result feeds rank fusion with other retrieval lanes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from .extractor import EntityMention, Extractor, PatternExtractor
from .storage import DEFAULT_AGENT, GraphStore, normalize_entity_id

logger = logging.getLogger(__name__)

DIRECT_TRIPLE_LIMIT = 100
COOCCURRENCE_FANOUT = 5
COOCCURRENCE_TRIPLE_LIMIT = 20


@dataclass
class SearchSettings:
    """Retrieval knobs. Zero values are honoured as given."""
    max_results: int = 20
    min_shared_entities: int = 1
    cooccurrence_boost: float = 0.1


@dataclass
class ExchangeHit:
    """One ranked exchange."""
    id: str
    score: float = 0.0
    shared_entities: Set[str] = field(default_factory=set)
    max_confidence: float = 0.0
    date: Optional[str] = None

    @property
    def shared_entity_count(self) -> int:
        return len(self.shared_entities)

    def see_date(self, source_date: Optional[str]) -> None:
        if source_date and (self.date is None or source_date > self.date):
            self.date = source_date

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "score": round(self.score, 4),
            "shared_entity_count": self.shared_entity_count,
            "shared_entities": sorted(self.shared_entities),
            "max_confidence": self.max_confidence,
            "date": self.date,
        }


@dataclass
class SearchResults:
    exchanges: List[ExchangeHit] = field(default_factory=list)
    entities: List[EntityMention] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exchanges": [hit.to_dict() for hit in self.exchanges],
            "entities": [{"name": e.name, "type": e.type} for e in self.entities],
        }


class GraphSearcher:
    """Single-hop link expansion + co-occurrence boosting."""

    def __init__(
        self,
        store: GraphStore,
        extractor: Optional[Extractor] = None,
        settings: Optional[SearchSettings] = None,
    ) -> None:
        self.store = store
        self.extractor = extractor or PatternExtractor()
        self.settings = settings or SearchSettings()

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def query_entities(self, query: str, known_entities: Optional[Iterable[Any]] = None) -> List[EntityMention]:
        """Extractor entities followed by gazetteer matches, one per entity id.

        Mentions are merged on their normalized id, so case and whitespace
        variants of a name count once.
        """
        entities: List[EntityMention] = []
        ids: Set[str] = set()
        candidates = list(self.extractor.extract_entities(query))
        candidates += self.extractor.match_gazetteer(query, known_entities or [])
        for mention in candidates:
            key = normalize_entity_id(mention.name)
            if key and key not in ids:
                entities.append(mention)
                ids.add(key)
        return entities

    def search(
        self,
        query: str,
        agent_id: str = DEFAULT_AGENT,
        limit: Optional[int] = None,
        known_entities: Optional[Iterable[Any]] = None,
    ) -> SearchResults:
        """Rank prior exchanges connected to the entities of *query*."""
        aid = agent_id or DEFAULT_AGENT
        max_results = self.settings.max_results if limit is None else limit

        entities = self.query_entities(query or "", known_entities)
        if not entities:
            return SearchResults()

        hits: Dict[str, ExchangeHit] = {}

        for entity in entities:
            entity_id = normalize_entity_id(entity.name)

            # Direct: triples where the entity is subject or object
            for triple in self.store.get_triples_for(entity.name, aid, DIRECT_TRIPLE_LIMIT):
                exchange_id = triple.get("source_exchange_id")
                if not exchange_id:
                    continue
                hit = hits.setdefault(exchange_id, ExchangeHit(id=exchange_id))
                confidence = triple.get("confidence")
                confidence = 1.0 if confidence is None else confidence
                hit.shared_entities.add(entity_id)
                hit.score += confidence
                hit.max_confidence = max(hit.max_confidence, confidence)
                hit.see_date(triple.get("source_date"))

            # Expansion: exchanges of entities that co-occur with this one
            for cooc in self.store.get_cooccurrences(entity.name, COOCCURRENCE_FANOUT):
                other = cooc["entity_b"] if cooc["entity_a"] == entity_id else cooc["entity_a"]
                boost = self.settings.cooccurrence_boost * (cooc.get("count") or 1)
                for triple in self.store.get_triples_by_id(other, aid, COOCCURRENCE_TRIPLE_LIMIT):
                    exchange_id = triple.get("source_exchange_id")
                    if not exchange_id:
                        continue
                    hit = hits.setdefault(exchange_id, ExchangeHit(id=exchange_id))
                    hit.score += boost
                    hit.see_date(triple.get("source_date"))

        ranked = [
            hit for hit in hits.values()
            if hit.shared_entity_count >= self.settings.min_shared_entities
        ]
        ranked.sort(key=lambda h: (-h.score, h.id))

        logger.debug(
            "Graph search agent=%s entities=%d candidates=%d kept=%d",
            aid, len(entities), len(hits), len(ranked),
        )
        return SearchResults(exchanges=ranked[:max_results], entities=entities)

    # ------------------------------------------------------------------
    # Entity context
    # ------------------------------------------------------------------

    def get_entity_context(self, entity_name: str, agent_id: str = DEFAULT_AGENT) -> Optional[Dict[str, Any]]:
        """Entity record plus its relationships and co-occurring entities.

        Returns None when the entity is not registered for *agent_id*.
        """
        aid = agent_id or DEFAULT_AGENT
        entity_id = normalize_entity_id(entity_name)
        entity = self.store.get_entity(entity_id, aid)
        if entity is None:
            return None

        triples = self.store.get_triples_for(entity_name, aid, 50)
        relationships: Dict[str, List[Dict[str, Any]]] = {}
        for t in triples:
            relationships.setdefault(t["predicate"], []).append({
                "subject": t["subject"],
                "object": t["object"],
                "confidence": t["confidence"],
                "date": t["source_date"],
            })

        cooccurrences = [
            {
                "entity": c["entity_b"] if c["entity_a"] == entity_id else c["entity_a"],
                "count": c["count"],
                "last_seen": c["last_seen"],
            }
            for c in self.store.get_cooccurrences(entity_name, 10)
        ]

        return {
            "entity": entity,
            "relationships": relationships,
            "cooccurrences": cooccurrences,
            "triple_count": len(triples),
        }
