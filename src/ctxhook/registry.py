"""Context registry: the corpus of documents, agent definitions and commands.

The registry is the only component that reads context files. Every write swaps
in a fresh snapshot under a lock and emits a RegistryDelta to subscribers (the
indexer), so readers never observe a half-applied change.
"""

import hashlib
import shlex
import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path

import yaml

from .config import DEFAULT_INCLUDE
from .errors import DuplicateId, NotFound
from .logging_config import get_logger
from .models import ContextUnit, RegistryDelta, UnitKind
from .text import parse_tags, split_front_matter, tokenize

logger = get_logger("registry")

DeltaListener = Callable[[RegistryDelta], None]


def unit_id_for(path: Path, root: Path) -> str:
    """Derive a unit id from its root-relative path: `agents/Web-Designer.md` -> `agents/web-designer`."""
    return path.relative_to(root).with_suffix("").as_posix().lower()


def read_unit(path: Path, root: Path) -> ContextUnit:
    """Read one context file into a ContextUnit.

    Malformed front matter or an unknown kind degrades to a plain document
    rather than dropping the file.
    """
    raw = path.read_bytes()
    stat = path.stat()
    text = raw.decode("utf-8", errors="replace")

    try:
        meta, body = split_front_matter(text)
    except yaml.YAMLError as e:
        logger.warning(f"Ignoring malformed front matter in {path}: {e}")
        meta, body = {}, text

    kind_value = str(meta.get("kind", UnitKind.DOCUMENT.value)).strip().lower()
    try:
        kind = UnitKind(kind_value)
    except ValueError:
        logger.warning(f"Unknown kind '{kind_value}' in {path}, treating as document")
        kind = UnitKind.DOCUMENT

    name = str(meta.get("name") or path.stem)
    description = str(meta.get("description") or "")
    tags = parse_tags(meta.get("tags"))

    run = meta.get("run") or ()
    if isinstance(run, str):
        run = shlex.split(run)
    run = tuple(str(part) for part in run)

    timeout = meta.get("timeout")
    try:
        timeout = float(timeout) if timeout is not None else None
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric timeout in {path}")
        timeout = None
    if timeout is not None and timeout <= 0:
        timeout = None

    tokens = tokenize(" ".join([name, description, " ".join(sorted(tags)), body]))

    return ContextUnit(
        id=unit_id_for(path, root),
        kind=kind,
        path=str(path),
        name=name,
        description=description,
        tags=tags,
        tokens=tuple(tokens),
        body=body,
        size_bytes=len(raw),
        content_hash=hashlib.sha256(raw).hexdigest(),
        last_modified=datetime.fromtimestamp(stat.st_mtime, UTC),
        run=run,
        timeout=timeout,
    )


class ContextRegistry:
    """Holds every known ContextUnit keyed by id."""

    def __init__(self, include: Iterable[str] = DEFAULT_INCLUDE):
        self.include = tuple(include)
        self._units: dict[str, ContextUnit] = {}
        self._lock = threading.RLock()
        self._listeners: list[DeltaListener] = []

    def subscribe(self, listener: DeltaListener) -> None:
        """Call `listener` with every non-empty delta, under the writer lock."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: DeltaListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # Reads

    def get(self, unit_id: str) -> ContextUnit:
        unit = self._units.get(unit_id)
        if unit is None:
            raise NotFound(unit_id)
        return unit

    def list_by_kind(self, kind: UnitKind) -> list[ContextUnit]:
        return sorted(
            (unit for unit in self._units.values() if unit.kind == kind),
            key=lambda unit: unit.id,
        )

    def units(self) -> list[ContextUnit]:
        return sorted(self._units.values(), key=lambda unit: unit.id)

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._units

    def __len__(self) -> int:
        return len(self._units)

    # Writes

    def register(self, unit: ContextUnit) -> bool:
        """Add a unit.

        Returns False if the identical unit is already present. Raises
        DuplicateId when the id is taken by different content; use update().
        """
        with self._lock:
            existing = self._units.get(unit.id)
            if existing is not None:
                if existing.content_hash == unit.content_hash:
                    return False
                raise DuplicateId(unit.id, existing.path, unit.path)
            self._swap({**self._units, unit.id: unit})
            self._emit(RegistryDelta(added=[unit]))
            return True

    def update(self, unit: ContextUnit) -> None:
        with self._lock:
            if unit.id not in self._units:
                raise NotFound(unit.id)
            self._swap({**self._units, unit.id: unit})
            self._emit(RegistryDelta(updated=[unit]))

    def remove(self, unit_id: str) -> None:
        with self._lock:
            if unit_id not in self._units:
                raise NotFound(unit_id)
            remaining = dict(self._units)
            del remaining[unit_id]
            self._swap(remaining)
            self._emit(RegistryDelta(removed=[unit_id]))

    def clear(self) -> None:
        """Drop every unit (session teardown)."""
        with self._lock:
            removed = sorted(self._units)
            self._swap({})
            if removed:
                self._emit(RegistryDelta(removed=removed))

    def rescan(self, root_paths: Iterable[str | Path]) -> RegistryDelta:
        """Re-read every context file under `root_paths` and apply the difference.

        Idempotent: a second call with unchanged files returns an empty delta.
        Only units whose path lies under one of the roots can be removed. When
        two roots yield the same id with different content the first root
        wins and the id is reported in `conflicts`.
        """
        roots = [Path(root).expanduser().resolve() for root in root_paths]

        with self._lock:
            current = self._units
            by_path = {unit.path: unit for unit in current.values()}
            scanned: dict[str, ContextUnit] = {}
            conflicts: list[str] = []

            for root in roots:
                if not root.is_dir():
                    logger.warning(f"Context root does not exist: {root}")
                    continue
                for path in self._discover(root):
                    try:
                        unit = self._reuse_or_read(path, root, by_path)
                    except OSError as e:
                        logger.warning(f"Cannot read context file {path}: {e}")
                        continue
                    prior = scanned.get(unit.id)
                    if prior is not None:
                        if prior.content_hash != unit.content_hash:
                            logger.error(str(DuplicateId(unit.id, prior.path, unit.path)))
                            conflicts.append(unit.id)
                        continue
                    scanned[unit.id] = unit

            added = [unit for uid, unit in sorted(scanned.items()) if uid not in current]
            updated = [
                unit
                for uid, unit in sorted(scanned.items())
                if uid in current and current[uid].content_hash != unit.content_hash
            ]
            removed = [
                uid
                for uid, unit in sorted(current.items())
                if uid not in scanned and _is_under(Path(unit.path), roots)
            ]

            delta = RegistryDelta(
                added=added,
                updated=updated,
                removed=removed,
                conflicts=sorted(set(conflicts)),
            )
            if delta.is_empty:
                if delta.conflicts:
                    logger.info(f"Rescan: no changes, {len(delta.conflicts)} conflict(s)")
                return delta

            merged = {uid: unit for uid, unit in current.items() if uid not in removed}
            for unit in added + updated:
                merged[unit.id] = unit
            self._swap(merged)
            logger.info(f"Rescan of {len(roots)} root(s): {delta.summary()}")
            self._emit(delta)
            return delta

    # Internals

    def _discover(self, root: Path) -> list[Path]:
        found: set[Path] = set()
        for pattern in self.include:
            for path in root.rglob(pattern):
                relative = path.relative_to(root)
                if any(part.startswith(".") for part in relative.parts):
                    continue
                if path.is_file():
                    found.add(path)
        return sorted(found)

    def _reuse_or_read(self, path: Path, root: Path, by_path: dict[str, ContextUnit]) -> ContextUnit:
        """Skip re-reading files whose size and mtime are unchanged."""
        known = by_path.get(str(path))
        if known is not None and known.id == unit_id_for(path, root):
            stat = path.stat()
            if (
                stat.st_size == known.size_bytes
                and datetime.fromtimestamp(stat.st_mtime, UTC) == known.last_modified
            ):
                return known
        return read_unit(path, root)

    def _swap(self, units: dict[str, ContextUnit]) -> None:
        self._units = units

    def _emit(self, delta: RegistryDelta) -> None:
        for listener in list(self._listeners):
            try:
                listener(delta)
            except Exception:
                logger.exception(f"Registry listener failed on delta ({delta.summary()})")


def _is_under(path: Path, roots: list[Path]) -> bool:
    return any(path.is_relative_to(root) for root in roots)
