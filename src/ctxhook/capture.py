"""Capture a learning as a new context document.

Learnings are plain markdown units under `<root>/learnings/`, so once written
they are classified and loaded like any other document.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

import yaml

from .errors import ConfigError
from .logging_config import get_logger
from .models import UnitKind
from .registry import ContextRegistry
from .text import parse_tags, slugify

logger = get_logger("capture")

LEARNINGS_DIR = "learnings"


def capture_learning(
    root: str | Path,
    title: str,
    body: str,
    tags: Iterable[str] | str = (),
    registry: ContextRegistry | None = None,
    now: datetime | None = None,
) -> Path:
    """Write a learning under `root` and return its path.

    Never overwrites: `2026-01-05-retry-flaky-tests.md` becomes
    `2026-01-05-retry-flaky-tests-2.md` on collision. When `registry` is given,
    `root` is rescanned so the learning is indexed immediately.
    """
    if not title.strip():
        raise ConfigError("A learning needs a title")
    if not body.strip():
        raise ConfigError("A learning needs a body")

    now = now or datetime.now(UTC)
    root = Path(root).expanduser().resolve()
    target_dir = root / LEARNINGS_DIR
    target_dir.mkdir(parents=True, exist_ok=True)

    meta = {
        "kind": UnitKind.DOCUMENT.value,
        "name": title.strip(),
        "description": body.strip().splitlines()[0][:200],
        "tags": sorted(parse_tags(tags if isinstance(tags, str) else list(tags))),
        "captured": now.isoformat(),
    }
    content = f"---\n{yaml.safe_dump(meta, sort_keys=False).strip()}\n---\n\n# {title.strip()}\n\n{body.strip()}\n"

    stem = f"{now.date().isoformat()}-{slugify(title)}"
    path = target_dir / f"{stem}.md"
    suffix = 2
    while True:
        try:
            with open(path, "x", encoding="utf-8") as f:
                f.write(content)
            break
        except FileExistsError:
            path = target_dir / f"{stem}-{suffix}.md"
            suffix += 1

    logger.info(f"Captured learning '{title.strip()}' at {path}")
    if registry is not None:
        registry.rescan([root])
    return path
