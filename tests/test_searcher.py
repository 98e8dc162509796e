"""Tests for link-expansion search and entity context."""

import pytest

from graph_memory.extractor import EntityMention, PatternExtractor
from graph_memory.searcher import ExchangeHit, GraphSearcher, SearchResults, SearchSettings


class FixedExtractor(PatternExtractor):
    """Returns the same query entities whatever the text."""

    def __init__(self, names):
        super().__init__()
        self.names = names

    def extract_entities(self, text):
        return [EntityMention(name, "PLACE") for name in self.names]


def _write(store, exchange_id, triples, cooccurrences=None, date="2026-01-10", agent_id="main"):
    names = []
    for s, _, o, *_ in triples:
        names.extend([s, o])
    store.write_exchange(
        entities=[{"name": n} for n in dict.fromkeys(names)],
        triples=[
            {"subject": s, "predicate": p, "object": o, "confidence": rest[0] if rest else None}
            for s, p, o, *rest in triples
        ],
        cooccurrences=cooccurrences or [],
        agent_id=agent_id,
        source_exchange_id=exchange_id,
        source_date=date,
    )


class TestSearchBasics:
    def test_no_entities_gives_empty_result(self, searcher, tmp_store):
        _write(tmp_store, "ex1", [("Alice", "visited", "Paris", 0.8)])
        results = searcher.search("what happened?")
        assert results.exchanges == []
        assert results.entities == []

    def test_empty_query(self, searcher):
        assert searcher.search("").to_dict() == {"exchanges": [], "entities": []}

    def test_unknown_entity_gives_no_exchanges(self, searcher, tmp_store):
        _write(tmp_store, "ex1", [("Alice", "visited", "Paris", 0.8)])
        results = searcher.search("Tell me about Zed")
        assert results.exchanges == []
        assert [e.name for e in results.entities] == ["Zed"]

    def test_alice_paris_end_to_end(self, searcher, tmp_store):
        tmp_store.write_exchange(
            entities=[{"name": "Alice", "type": "PERSON"}, {"name": "Paris", "type": "PLACE"}],
            triples=[{"subject": "Alice", "predicate": "visited", "object": "Paris", "confidence": 0.8}],
            source_exchange_id="ex-paris",
            source_date="2026-01-10",
        )
        assert tmp_store.get_entity("alice")["entity_type"] == "PERSON"
        assert tmp_store.get_entity("paris")["entity_type"] == "PLACE"

        results = searcher.search("Tell me about Alice")
        assert [e.name for e in results.entities] == ["Alice"]
        assert len(results.exchanges) == 1
        hit = results.exchanges[0]
        assert hit.id == "ex-paris"
        assert hit.shared_entity_count == 1
        assert hit.shared_entities == {"alice"}
        assert hit.score == pytest.approx(0.8)
        assert hit.max_confidence == pytest.approx(0.8)
        assert hit.date == "2026-01-10"

    def test_spelling_variants_count_once(self, tmp_store):
        _write(tmp_store, "ex-ny", [("Alice", "visited", "New York", 0.8)])
        searcher = GraphSearcher(tmp_store, extractor=FixedExtractor(["New York", "New  York"]))
        results = searcher.search("New York or New  York")
        assert [e.name for e in results.entities] == ["New York"]
        hit = results.exchanges[0]
        assert hit.shared_entities == {"new_york"}
        assert hit.shared_entity_count == 1
        assert hit.score == pytest.approx(0.8)

    def test_missing_confidence_counts_as_one(self, searcher, tmp_store):
        _write(tmp_store, "ex1", [("Alice", "knows", "Bob")])
        hit = searcher.search("Alice").exchanges[0]
        assert hit.score == pytest.approx(1.0)

    def test_zero_confidence_contributes_nothing(self, searcher, tmp_store):
        _write(tmp_store, "ex1", [("Alice", "knows", "Bob", 0.0)])
        hit = searcher.search("Alice").exchanges[0]
        assert hit.score == pytest.approx(0.0)
        assert hit.shared_entity_count == 1

    def test_triples_without_exchange_are_ignored(self, searcher, tmp_store):
        tmp_store.add_triple("Alice", "visited", "Paris", 0.8)
        assert searcher.search("Alice").exchanges == []


class TestScoring:
    def test_direct_plus_cooccurrence_boost(self, searcher, tmp_store):
        _write(tmp_store, "ex1", [("Alice", "visited", "Paris", 0.8)], [("Alice", "Paris")])
        hit = searcher.search("Alice").exchanges[0]
        # 0.8 direct + 0.1 * 1 via paris
        assert hit.score == pytest.approx(0.9)
        assert hit.shared_entities == {"alice"}
        assert hit.max_confidence == pytest.approx(0.8)

    def test_each_shared_entity_adds_its_triples(self, searcher, tmp_store):
        _write(tmp_store, "ex1", [("Alice", "visited", "Paris", 0.8)])
        hit = searcher.search("Alice and Paris").exchanges[0]
        assert hit.shared_entity_count == 2
        assert hit.score == pytest.approx(1.6)

    def test_boost_scales_with_count(self, tmp_store):
        s = GraphSearcher(tmp_store, settings=SearchSettings(cooccurrence_boost=0.5))
        _write(tmp_store, "ex1", [("Alice", "visited", "Paris", 0.8)], [("Alice", "Paris")])
        tmp_store.write_exchange(cooccurrences=[("Alice", "Paris")])
        hit = s.search("Alice").exchanges[0]
        assert hit.score == pytest.approx(0.8 + 0.5 * 2)

    def test_min_shared_gate_drops_boost_only_exchanges(self, searcher, tmp_store):
        _write(tmp_store, "ex-alice", [("Alice", "visited", "Paris", 0.8)], [("Alice", "Paris")])
        _write(tmp_store, "ex-bob", [("Bob", "visited", "Paris", 1.0)])
        ids = [h.id for h in searcher.search("Alice").exchanges]
        assert ids == ["ex-alice"]

    def test_zero_min_shared_keeps_boost_only_exchanges(self, tmp_store):
        s = GraphSearcher(tmp_store, settings=SearchSettings(min_shared_entities=0))
        _write(tmp_store, "ex-alice", [("Alice", "visited", "Paris", 0.8)], [("Alice", "Paris")])
        _write(tmp_store, "ex-bob", [("Bob", "visited", "Paris", 1.0)])
        hits = {h.id: h for h in s.search("Alice").exchanges}
        assert set(hits) == {"ex-alice", "ex-bob"}
        assert hits["ex-bob"].shared_entity_count == 0
        assert hits["ex-bob"].score == pytest.approx(0.1)
        assert hits["ex-bob"].max_confidence == 0.0

    def test_higher_min_shared(self, tmp_store):
        s = GraphSearcher(tmp_store, settings=SearchSettings(min_shared_entities=2))
        _write(tmp_store, "ex1", [("Alice", "visited", "Paris", 0.8)])
        _write(tmp_store, "ex2", [("Alice", "knows", "Bob", 0.8)])
        ids = [h.id for h in s.search("Alice visited Paris").exchanges]
        assert ids == ["ex1"]

    def test_newest_date_wins(self, searcher, tmp_store):
        _write(tmp_store, "ex1", [("Alice", "visited", "Paris", 0.8)], date="2026-01-01")
        tmp_store.add_triple("Alice", "likes", "Rome", 0.5, "ex1", "2026-02-01")
        hit = searcher.search("Alice").exchanges[0]
        assert hit.date == "2026-02-01"
        assert hit.max_confidence == pytest.approx(0.8)


class TestRanking:
    def test_sorted_by_score(self, searcher, tmp_store):
        _write(tmp_store, "low", [("Alice", "likes", "Tea", 0.3)])
        _write(tmp_store, "high", [("Alice", "likes", "Coffee", 0.9)])
        assert [h.id for h in searcher.search("Alice").exchanges] == ["high", "low"]

    def test_ties_broken_by_exchange_id(self, searcher, tmp_store):
        for ex in ("ex-c", "ex-a", "ex-b"):
            _write(tmp_store, ex, [("Alice", "mentions", f"Topic {ex}", 0.5)])
        assert [h.id for h in searcher.search("Alice").exchanges] == ["ex-a", "ex-b", "ex-c"]

    def test_limit_truncates_exchanges_only(self, tmp_store):
        s = GraphSearcher(tmp_store, settings=SearchSettings(max_results=2))
        for i in range(4):
            _write(tmp_store, f"ex{i}", [("Alice", "mentions", f"Topic {i}", 0.5)])
        results = s.search("Alice and Bob")
        assert len(results.exchanges) == 2
        assert [e.name for e in results.entities] == ["Alice", "Bob"]
        assert len(s.search("Alice", limit=3).exchanges) == 3

    def test_agent_isolation(self, searcher, tmp_store):
        _write(tmp_store, "ex-main", [("Alice", "visited", "Paris", 0.8)])
        _write(tmp_store, "ex-helper", [("Alice", "visited", "Rome", 0.8)], agent_id="helper")
        assert [h.id for h in searcher.search("Alice", "helper").exchanges] == ["ex-helper"]


class TestQueryEntities:
    def test_gazetteer_adds_lowercase_mentions(self, searcher, tmp_store):
        _write(tmp_store, "ex1", [("Project Atlas", "uses", "Python", 0.8)])
        known = tmp_store.recent_entities(limit=200)
        results = searcher.search("how is project atlas doing", known_entities=known)
        assert [e.name for e in results.entities] == ["Project Atlas"]
        assert [h.id for h in results.exchanges] == ["ex1"]

    def test_merge_is_case_insensitive(self, searcher):
        entities = searcher.query_entities("Tell me about Alice", ["alice", "Bob"])
        assert [e.name for e in entities] == ["Alice"]


class TestResultShapes:
    def test_hit_to_dict(self):
        hit = ExchangeHit(id="ex1", score=0.123456, shared_entities={"b", "a"}, max_confidence=0.8, date="2026-01-01")
        assert hit.to_dict() == {
            "id": "ex1",
            "score": 0.1235,
            "shared_entity_count": 2,
            "shared_entities": ["a", "b"],
            "max_confidence": 0.8,
            "date": "2026-01-01",
        }

    def test_empty_results(self):
        assert SearchResults().to_dict() == {"exchanges": [], "entities": []}


class TestEntityContext:
    def test_unknown_entity(self, searcher):
        assert searcher.get_entity_context("Nobody") is None

    def test_context_groups_relationships(self, searcher, tmp_store):
        _write(tmp_store, "ex1", [("Alice", "visited", "Paris", 0.8), ("Alice", "knows", "Bob", 0.9)],
               [("Alice", "Paris"), ("Bob", "Alice")])
        _write(tmp_store, "ex2", [("Carol", "knows", "Alice", 1.0)])

        ctx = searcher.get_entity_context("alice")
        assert ctx["entity"]["id"] == "alice"
        assert ctx["triple_count"] == 3
        assert set(ctx["relationships"]) == {"visited", "knows"}
        assert len(ctx["relationships"]["knows"]) == 2
        visited = ctx["relationships"]["visited"][0]
        assert visited == {"subject": "alice", "object": "paris", "confidence": 0.8, "date": "2026-01-10"}
        others = {c["entity"] for c in ctx["cooccurrences"]}
        assert others == {"paris", "bob"}
        assert all(set(c) == {"entity", "count", "last_seen"} for c in ctx["cooccurrences"])

    def test_context_is_agent_scoped(self, searcher, tmp_store):
        tmp_store.upsert_entity("Alice", agent_id="helper")
        assert searcher.get_entity_context("Alice") is None
        assert searcher.get_entity_context("Alice", "helper") is not None
