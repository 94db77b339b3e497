"""Inverted index over the context registry.

The index is a pure function of the unit set: `build_full` sorts every key and
id before insertion so input order never shows through, and `apply_delta`
produces exactly what `build_full` would on the post-delta units.
"""

import threading
from collections import Counter, defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field

from .logging_config import get_logger
from .models import ContextUnit, RegistryDelta, UnitKind
from .text import tag_terms

logger = get_logger("indexer")

WEIGHT_PRECISION = 6

Postings = dict[str, dict[str, float]]


@dataclass(frozen=True)
class Index:
    """Immutable index snapshot.

    tokens: token -> {unit_id: term-frequency weight}
    tags:   tag term -> {unit_id: 1.0} (multi-word tags are split into terms)
    kinds:  kind -> sorted unit ids
    names:  lowercased unit name -> sorted unit ids
    """

    unit_ids: tuple[str, ...] = ()
    tokens: Postings = field(default_factory=dict)
    tags: Postings = field(default_factory=dict)
    kinds: dict[str, tuple[str, ...]] = field(default_factory=dict)
    names: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.unit_ids)

    def to_dict(self) -> dict:
        return {
            "unit_ids": list(self.unit_ids),
            "tokens": self.tokens,
            "tags": self.tags,
            "kinds": {kind: list(ids) for kind, ids in self.kinds.items()},
            "names": {name: list(ids) for name, ids in self.names.items()},
        }


class _Builder:
    """Mutable working copy used by build_full and apply_delta."""

    def __init__(self, index: Index | None = None):
        self.unit_ids: set[str] = set(index.unit_ids) if index else set()
        self.tokens: dict[str, dict[str, float]] = defaultdict(dict)
        self.tags: dict[str, dict[str, float]] = defaultdict(dict)
        self.kinds: dict[str, set[str]] = defaultdict(set)
        self.names: dict[str, set[str]] = defaultdict(set)
        if index:
            for token, posting in index.tokens.items():
                self.tokens[token].update(posting)
            for tag, posting in index.tags.items():
                self.tags[tag].update(posting)
            for kind, ids in index.kinds.items():
                self.kinds[kind].update(ids)
            for name, ids in index.names.items():
                self.names[name].update(ids)

    def add(self, unit: ContextUnit) -> None:
        self.unit_ids.add(unit.id)
        counts = Counter(unit.tokens)
        total = len(unit.tokens)
        for token in sorted(counts):
            self.tokens[token][unit.id] = round(counts[token] / total, WEIGHT_PRECISION)
        for term in tag_terms(unit.tags):
            self.tags[term][unit.id] = 1.0
        self.kinds[unit.kind.value].add(unit.id)
        self.names[unit.name.lower()].add(unit.id)

    def discard(self, unit_ids: set[str]) -> None:
        if not unit_ids:
            return
        self.unit_ids -= unit_ids
        for postings in (self.tokens, self.tags):
            for key in list(postings):
                posting = postings[key]
                for unit_id in unit_ids & posting.keys():
                    del posting[unit_id]
                if not posting:
                    del postings[key]
        for groups in (self.kinds, self.names):
            for key in list(groups):
                groups[key] -= unit_ids
                if not groups[key]:
                    del groups[key]

    def freeze(self) -> Index:
        return Index(
            unit_ids=tuple(sorted(self.unit_ids)),
            tokens=_sorted_postings(self.tokens),
            tags=_sorted_postings(self.tags),
            kinds={key: tuple(sorted(self.kinds[key])) for key in sorted(self.kinds)},
            names={key: tuple(sorted(self.names[key])) for key in sorted(self.names)},
        )


def _sorted_postings(postings: dict[str, dict[str, float]]) -> Postings:
    return {
        key: {unit_id: postings[key][unit_id] for unit_id in sorted(postings[key])}
        for key in sorted(postings)
    }


def build_full(units: Iterable[ContextUnit]) -> Index:
    """Build an index from scratch. The result does not depend on input order."""
    builder = _Builder()
    for unit in sorted(units, key=lambda unit: unit.id):
        builder.add(unit)
    return builder.freeze()


def apply_delta(index: Index, delta: RegistryDelta) -> Index:
    """Return the index for the post-delta unit set without a full rebuild."""
    builder = _Builder(index)
    changed = [*delta.added, *delta.updated]
    builder.discard(set(delta.removed) | {unit.id for unit in changed})
    for unit in sorted(changed, key=lambda unit: unit.id):
        builder.add(unit)
    return builder.freeze()


class Indexer:
    """Keeps the current Index in step with a registry.

    Writers are serialized; readers grab the current snapshot reference and so
    see either the pre- or the post-rebuild index.
    """

    def __init__(self, registry=None):
        self._lock = threading.Lock()
        self._index = Index()
        if registry is not None:
            self._index = build_full(registry.units())
            registry.subscribe(self.on_delta)

    @property
    def index(self) -> Index:
        return self._index

    def rebuild(self, units: Iterable[ContextUnit]) -> Index:
        with self._lock:
            self._index = build_full(units)
            logger.info(f"Index rebuilt: {len(self._index)} units, {len(self._index.tokens)} tokens")
            return self._index

    def on_delta(self, delta: RegistryDelta) -> None:
        with self._lock:
            self._index = apply_delta(self._index, delta)
            logger.debug(f"Index updated ({delta.summary()}), {len(self._index)} units")

    def lookup(self, query: Iterable[str]) -> set[str]:
        """Union of units matching any query token by text or tag.

        An empty query matches nothing.
        """
        index = self._index
        matches: set[str] = set()
        for token in query:
            token = token.lower()
            matches.update(index.tokens.get(token, {}))
            matches.update(index.tags.get(token, {}))
        return matches

    def ids_for_kind(self, kind: UnitKind) -> tuple[str, ...]:
        return self._index.kinds.get(kind.value, ())

    def resolve_command(self, command_ref: str) -> str | None:
        """Resolve a command id or name to the id of a command unit."""
        index = self._index
        commands = index.kinds.get(UnitKind.COMMAND.value, ())
        ref = command_ref.strip().lower()
        if ref in commands:
            return ref
        named = [unit_id for unit_id in index.names.get(ref, ()) if unit_id in commands]
        if not named:
            return None
        if len(named) > 1:
            logger.warning(f"Command name '{command_ref}' is ambiguous ({', '.join(named)}), using {named[0]}")
        return named[0]
