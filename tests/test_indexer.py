"""Tests for the inverted index."""

import random
from datetime import UTC, datetime

from ctxhook.indexer import Indexer, apply_delta, build_full
from ctxhook.models import ContextUnit, RegistryDelta, UnitKind
from ctxhook.registry import ContextRegistry
from ctxhook.text import tokenize


def unit(unit_id, text, kind=UnitKind.DOCUMENT, tags=(), name=None, content_hash=None):
    return ContextUnit(
        id=unit_id,
        kind=kind,
        path=f"/ctx/{unit_id}.md",
        name=name or unit_id,
        tags=frozenset(tags),
        tokens=tuple(tokenize(text)),
        body=text,
        size_bytes=len(text),
        content_hash=content_hash or f"hash-{unit_id}-{text}",
        last_modified=datetime(2026, 1, 1, tzinfo=UTC),
    )


CORPUS = [
    unit("docs/html", "HTML structure for a website landing page", tags={"web"}),
    unit("docs/css", "CSS layout and responsive design", tags={"web", "design"}),
    unit("agents/researcher", "Finds sources and summarizes research", kind=UnitKind.AGENT, tags={"research"}),
    unit("commands/lint", "Run the linter over the code", kind=UnitKind.COMMAND, name="lint"),
    unit("docs/general", "General notes about the project"),
]


class TestBuildFull:
    """Test full index construction."""

    def test_order_independent(self):
        """Any permutation of the same units builds an identical index."""
        expected = build_full(CORPUS)
        rng = random.Random(7)
        for _ in range(10):
            shuffled = CORPUS[:]
            rng.shuffle(shuffled)
            assert build_full(shuffled) == expected
            assert build_full(shuffled).to_dict() == expected.to_dict()

    def test_keys_sorted(self):
        index = build_full(CORPUS)
        assert list(index.tokens) == sorted(index.tokens)
        assert list(index.unit_ids) == sorted(u.id for u in CORPUS)
        for posting in index.tokens.values():
            assert list(posting) == sorted(posting)

    def test_postings_and_kinds(self):
        index = build_full(CORPUS)

        assert set(index.tags["web"]) == {"docs/html", "docs/css"}
        assert index.kinds["agent"] == ("agents/researcher",)
        assert index.names["lint"] == ("commands/lint",)
        assert "website" in index.tokens

    def test_multi_word_tags_indexed_by_term(self):
        index = build_full([unit("docs/review", "Checklist", tags={"code-review", "web design"})])

        assert set(index.tags) == {"code", "review", "web", "design"}
        assert "code-review" not in index.tags

    def test_empty(self):
        index = build_full([])
        assert len(index) == 0
        assert index.tokens == {}


class TestApplyDelta:
    """An incrementally updated index equals a full rebuild."""

    def test_add_update_remove_matches_full_build(self):
        before = CORPUS[:3]
        base = build_full(before)

        revised_css = unit("docs/css", "CSS grid and flexbox", tags={"design"}, content_hash="css-v2")
        added = CORPUS[3]
        delta = RegistryDelta(added=[added], updated=[revised_css], removed=["docs/html"])

        after = [revised_css, CORPUS[2], added]
        assert apply_delta(base, delta) == build_full(after)

    def test_random_deltas_match_full_build(self):
        """Seeded add/update/remove sequences never drift from a full rebuild."""
        words = ["html", "css", "grid", "research", "citation", "deploy", "docker", "notes", "layout"]
        tags = ["web", "design", "code-review", "web design", "research"]
        rng = random.Random(11)

        def random_unit(unit_id):
            text = " ".join(rng.choice(words) for _ in range(rng.randint(1, 6)))
            kind = rng.choice(list(UnitKind))
            return unit(unit_id, text, kind=kind, tags=rng.sample(tags, rng.randint(0, 2)))

        current = {f"docs/{i:02d}": random_unit(f"docs/{i:02d}") for i in range(8)}
        index = build_full(current.values())
        next_id = 8

        for _ in range(25):
            existing = sorted(current)
            removed = rng.sample(existing, rng.randint(0, min(2, len(existing))))
            remaining = [unit_id for unit_id in existing if unit_id not in removed]
            to_update = rng.sample(remaining, rng.randint(0, min(3, len(remaining))))
            updated = [random_unit(unit_id) for unit_id in to_update]
            added = []
            for _ in range(rng.randint(0, 2)):
                added.append(random_unit(f"docs/{next_id:02d}"))
                next_id += 1

            index = apply_delta(index, RegistryDelta(added=added, updated=updated, removed=removed))
            for unit_id in removed:
                del current[unit_id]
            current.update({item.id: item for item in [*updated, *added]})

            assert index == build_full(current.values())

    def test_removing_last_posting_drops_key(self):
        base = build_full(CORPUS)
        index = apply_delta(base, RegistryDelta(removed=["agents/researcher"]))

        assert "research" not in index.tags
        assert "agent" not in index.kinds
        assert index == build_full([u for u in CORPUS if u.id != "agents/researcher"])

    def test_empty_delta_is_identity(self):
        base = build_full(CORPUS)
        assert apply_delta(base, RegistryDelta()) == base


class TestIndexer:
    """Test the registry-bound indexer."""

    def test_follows_registry_writes(self):
        registry = ContextRegistry()
        indexer = Indexer(registry)
        for item in CORPUS:
            registry.register(item)

        assert indexer.index == build_full(CORPUS)

        registry.remove("docs/general")
        assert "docs/general" not in indexer.index.unit_ids

    def test_lookup(self):
        indexer = Indexer()
        indexer.rebuild(CORPUS)

        assert indexer.lookup(["website"]) == {"docs/html"}
        assert indexer.lookup(["web"]) == {"docs/html", "docs/css"}
        assert indexer.lookup([]) == set()
        assert indexer.lookup(["zzz"]) == set()

    def test_resolve_command(self):
        indexer = Indexer()
        indexer.rebuild(CORPUS)

        assert indexer.resolve_command("commands/lint") == "commands/lint"
        assert indexer.resolve_command("LINT") == "commands/lint"
        assert indexer.resolve_command("docs/html") is None
        assert indexer.resolve_command("missing") is None

    def test_ids_for_kind(self):
        indexer = Indexer()
        indexer.rebuild(CORPUS)
        assert indexer.ids_for_kind(UnitKind.COMMAND) == ("commands/lint",)
