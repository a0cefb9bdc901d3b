"""
Default-deny network authorization.

The rule set of a namespace is modelled as a graph of allowed
(source -> destination) edges; any pair without an allow edge is blocked.
Applying a new rule set is all-or-nothing: the diff against the live rules is
computed before anything is sent, and a failure part-way restores every
destination already touched from the snapshot.
"""

import asyncio
import logging
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from controller.src.errors import ConfigurationError, NetworkPolicyApplyError, ReleaseError
from controller.src.models.resources import ANY_SOURCE, DeploymentTarget, NetworkPolicyRule, PolicyDiff

logger = logging.getLogger(__name__)

Edge = Tuple[str, str]

class NetworkPolicyGraph:
    def __init__(self, edges: Iterable[Edge] = ()):
        self._edges: FrozenSet[Edge] = frozenset(edges)

    @classmethod
    def from_rules(cls, rules: Iterable[NetworkPolicyRule], workloads: Optional[Iterable[str]] = None) -> "NetworkPolicyGraph":
        """Validate rules and build the allow graph.

        Explicit deny rules document intent; they never add an edge, but an
        allow and a deny for the same pair is ambiguous and rejected.
        """
        known = set(workloads) if workloads is not None else None
        allowed: Set[Edge] = set()
        denied: Set[Edge] = set()

        for rule in rules:
            if rule.destination == ANY_SOURCE:
                raise ConfigurationError(f"'{ANY_SOURCE}' is not a valid destination ({rule})")
            if known is not None:
                if rule.destination not in known:
                    raise ConfigurationError(f"Rule '{rule}' targets unknown workload '{rule.destination}'")
                if rule.source != ANY_SOURCE and rule.source not in known:
                    raise ConfigurationError(f"Rule '{rule}' names unknown source '{rule.source}'")
            (allowed if rule.allowed else denied).add(rule.pair)

        conflicts = allowed & denied
        if conflicts:
            pairs = ", ".join(f"{s} -> {d}" for s, d in sorted(conflicts))
            raise ConfigurationError(f"Conflicting allow and deny rules for: {pairs}")

        return cls(allowed)

    @property
    def edges(self) -> FrozenSet[Edge]:
        return self._edges

    def allows(self, source: str, destination: str) -> bool:
        return (source, destination) in self._edges or (ANY_SOURCE, destination) in self._edges

    def by_destination(self) -> Dict[str, List[NetworkPolicyRule]]:
        grouped: Dict[str, List[NetworkPolicyRule]] = {}
        for source, destination in sorted(self._edges):
            grouped.setdefault(destination, []).append(
                NetworkPolicyRule(source=source, destination=destination, allowed=True)
            )
        return grouped

    def diff(self, current: "NetworkPolicyGraph") -> PolicyDiff:
        """What must change to turn `current` into this graph."""
        added = sorted(self._edges - current.edges)
        removed = sorted(current.edges - self._edges)
        destinations = sorted({d for _, d in added} | {d for _, d in removed})
        return PolicyDiff(
            added=[NetworkPolicyRule(source=s, destination=d) for s, d in added],
            removed=[NetworkPolicyRule(source=s, destination=d) for s, d in removed],
            destinations=destinations,
        )

def graph_from_live(rules_by_destination: Dict[str, List[NetworkPolicyRule]]) -> NetworkPolicyGraph:
    return NetworkPolicyGraph(
        rule.pair
        for rules in rules_by_destination.values()
        for rule in rules
        if rule.allowed
    )

class NetworkPolicyEnforcer:
    def __init__(self, runner):
        self.runner = runner

    def validate(self, target: DeploymentTarget) -> NetworkPolicyGraph:
        resources = target.resources
        return NetworkPolicyGraph.from_rules(
            resources.network_policies,
            workloads=[w.name for w in resources.workloads],
        )

    async def apply(self, target: DeploymentTarget, desired: Optional[NetworkPolicyGraph] = None) -> PolicyDiff:
        """Apply the target's rule set atomically. Returns the applied diff."""
        self.runner.require(target)
        cluster = self.runner.cluster
        namespace = target.namespace

        if desired is None:
            desired = self.validate(target)

        snapshot = (await self.runner.dispatch(
            target, "read network policies", cluster.read_policy_rules, namespace,
        )).value
        current = graph_from_live(snapshot)

        diff = desired.diff(current)
        if diff.empty:
            logger.info(f"Network policies for {target.key} already up to date")
            await self.runner.dispatch(target, "ensure default deny", cluster.ensure_default_deny, namespace)
            return diff

        logger.info(
            f"Applying network policy diff to {target.key}: "
            f"+{len(diff.added)} -{len(diff.removed)} across {diff.destinations}"
        )

        desired_by_destination = desired.by_destination()
        touched: List[str] = []
        try:
            for destination in diff.destinations:
                touched.append(destination)
                await self.runner.dispatch(
                    target,
                    f"write network policy {destination}",
                    cluster.write_policy_rules,
                    namespace,
                    destination,
                    desired_by_destination.get(destination, []),
                )
            # Last, so a failed apply never leaves a new deny-all behind
            await self.runner.dispatch(target, "ensure default deny", cluster.ensure_default_deny, namespace)
        except ReleaseError as e:
            logger.error(f"Network policy apply failed for {target.key}: {e}; restoring previous rule set")
            await self._restore(target, snapshot, touched)
            if isinstance(e, ConfigurationError):
                raise
            raise NetworkPolicyApplyError(f"Network policy apply failed for {target.key}: {e}") from e
        except asyncio.CancelledError:
            logger.warning(f"Network policy apply for {target.key} cancelled; restoring previous rule set")
            await asyncio.shield(self._restore(target, snapshot, touched))
            raise

        return diff

    async def _restore(self, target: DeploymentTarget, snapshot: Dict[str, List[NetworkPolicyRule]], touched: List[str]):
        cluster = self.runner.cluster
        for destination in reversed(touched):
            previous = snapshot.get(destination, [])
            try:
                await self.runner.dispatch(
                    target,
                    f"restore network policy {destination}",
                    cluster.write_policy_rules,
                    target.namespace,
                    destination,
                    previous,
                )
            except ReleaseError as e:
                # Keep restoring the rest; the outer error is still raised
                logger.error(f"Failed to restore network policy {destination} on {target.key}: {e}")
