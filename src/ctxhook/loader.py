"""Context loader and agent selector.

Admission walks candidates in rank order and is all-or-nothing per unit: the
first candidate that does not fit ends admission for this call, and the
bundle built so far is returned together with a BudgetExceeded condition.
"""

from dataclasses import dataclass, field

from .classifier import rank_key
from .errors import BudgetExceeded
from .logging_config import get_logger
from .models import BundleEntry, ContextBundle, RankedCandidate, UnitKind

logger = get_logger("loader")


@dataclass
class LoadResult:
    """Outcome of one load call. `bundle` is always usable."""

    bundle: ContextBundle
    admitted: list[str] = field(default_factory=list)
    retired: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    condition: BudgetExceeded | None = None

    @property
    def budget_exceeded(self) -> bool:
        return self.condition is not None


class ContextLoader:
    """Budgeted, de-duplicated admission of ranked candidates.

    Agents are not swapped here: once a bundle holds an agent, further agent
    candidates are skipped. AgentSelector adds the replacement rule.
    """

    def load(
        self,
        candidates: list[RankedCandidate],
        current: ContextBundle,
        budget: int | None = None,
    ) -> LoadResult:
        budget = current.budget if budget is None else budget
        entries = list(current.entries)
        result = LoadResult(bundle=current)

        # A lowered budget evicts the most recently added carry-over first
        while entries and sum(entry.size_bytes for entry in entries) > budget:
            evicted = entries.pop()
            result.retired.append(evicted.unit_id)
            logger.info(f"Evicted {evicted.unit_id}: carry-over exceeds budget {budget}")

        ordered = [candidate for candidate in sorted(candidates, key=rank_key) if candidate.score > 0]
        agent_decided = False

        for position, candidate in enumerate(ordered):
            present = any(entry.unit_id == candidate.unit_id for entry in entries)
            if present or candidate.unit_id in result.admitted:
                if candidate.kind == UnitKind.AGENT:
                    agent_decided = True
                result.skipped.append(candidate.unit_id)
                continue

            retiring: list[str] = []
            if candidate.kind == UnitKind.AGENT:
                if agent_decided:
                    result.skipped.append(candidate.unit_id)
                    continue
                agent_decided = True
                admission = self._agent_admission(candidate, entries)
                if admission is None:
                    result.skipped.append(candidate.unit_id)
                    continue
                retiring = admission

            used = sum(entry.size_bytes for entry in entries if entry.unit_id not in retiring)
            if used + candidate.size_bytes > budget:
                rejected = self._rejected(ordered[position:], entries, result.admitted, agent_decided)
                result.condition = BudgetExceeded(partial=None, rejected=rejected)
                logger.info(
                    f"Budget {budget} exhausted at {candidate.unit_id} "
                    f"(used={used}, size={candidate.size_bytes}); {len(rejected)} not admitted"
                )
                break

            if retiring:
                entries = [entry for entry in entries if entry.unit_id not in retiring]
                result.retired.extend(retiring)
            entries.append(
                BundleEntry(
                    unit_id=candidate.unit_id,
                    kind=candidate.kind,
                    size_bytes=candidate.size_bytes,
                    score=candidate.score,
                )
            )
            result.admitted.append(candidate.unit_id)

        result.bundle = ContextBundle(budget=budget, entries=entries)
        if result.condition is not None:
            result.condition.partial = result.bundle
        return result

    def _agent_admission(self, candidate: RankedCandidate, entries: list[BundleEntry]) -> list[str] | None:
        """Ids to retire so `candidate` can be admitted, or None to skip it."""
        if any(entry.kind == UnitKind.AGENT for entry in entries):
            return None
        return []

    @staticmethod
    def _rejected(
        remaining: list[RankedCandidate],
        entries: list[BundleEntry],
        admitted: list[str],
        agent_decided: bool,
    ) -> list[str]:
        present = {entry.unit_id for entry in entries} | set(admitted)
        rejected: list[str] = []
        for offset, candidate in enumerate(remaining):
            if offset and agent_decided and candidate.kind == UnitKind.AGENT:
                continue
            if candidate.unit_id not in present and candidate.unit_id not in rejected:
                rejected.append(candidate.unit_id)
        return rejected


class AgentSelector(ContextLoader):
    """Loader that keeps exactly one active agent.

    The highest-scoring agent candidate replaces any previously loaded agent;
    the retired agent's bytes are released before the budget check.
    """

    def _agent_admission(self, candidate: RankedCandidate, entries: list[BundleEntry]) -> list[str] | None:
        prior = [entry.unit_id for entry in entries if entry.kind == UnitKind.AGENT]
        if prior:
            logger.info(f"Agent {candidate.unit_id} replaces {', '.join(prior)}")
        return prior
