"""Reconciliation of desired resources against recorded state.

Computes the operations needed to move the recorded state to the desired
stack:
- declared, not recorded -> create
- declared, recorded with a different configuration/provider, or whose
  upstream outputs changed since it was applied -> update
- declared and unchanged -> noop (never executed)
- recorded, no longer declared -> delete

Creates and updates follow the graph's waves with no-ops filtered out, so
an unchanged stack plans no operations. Deletes run dependents before
dependencies, before the apply waves unless a still-declared resource that
used the deleted one has to be updated first.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from errors import UnresolvedReferenceError
from stack import ResourceDecl, resolve_references
from stack_opr.graph import ResourceGraph, reverse_waves
from stack_opr.state import ResourceRecord, StateStore

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
DELETE = 'delete'
NOOP = 'noop'

# Symbols for plan output
ACTION_SYMBOLS = {CREATE: '+', UPDATE: '~', DELETE: '-', NOOP: ' '}


@dataclass
class Operation:
    """A planned action for one resource.

    Attributes:
        action: create, update, delete or noop
        address: Resource address (type.name)
        decl: Desired declaration (None for deletes)
        prior: Recorded state (None for creates)
        dependencies: Addresses that must finish before this operation
        reason: Why the action was chosen
        conditional: Update only if re-resolved inputs differ from prior.inputs
    """
    action: str
    address: str
    decl: Optional[ResourceDecl] = None
    prior: Optional[ResourceRecord] = None
    dependencies: list[str] = field(default_factory=list)
    reason: str = ''
    conditional: bool = False

    @property
    def type(self) -> str:
        return self.decl.type if self.decl else self.prior.type  # type: ignore[union-attr]

    @property
    def name(self) -> str:
        return self.decl.name if self.decl else self.prior.name  # type: ignore[union-attr]

    @property
    def provider(self) -> str:
        return self.decl.provider if self.decl else self.prior.provider  # type: ignore[union-attr]

    def __str__(self) -> str:
        return f"{ACTION_SYMBOLS[self.action]} {self.action} {self.address}"

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'action': self.action, 'address': self.address}
        if self.reason:
            d['reason'] = self.reason
        if self.dependencies:
            d['dependencies'] = list(self.dependencies)
        if self.conditional:
            d['conditional'] = True
        return d


@dataclass
class Plan:
    """Ordered operations for one run.

    Attributes:
        stack_name: Stack the plan was computed for
        serial: State serial observed while planning
        waves: Operation waves; each wave may run concurrently
        noops: Declared resources that need no change
        destroy: True for a destroy plan
    """
    stack_name: str
    serial: int
    waves: list[list[Operation]] = field(default_factory=list)
    noops: list[Operation] = field(default_factory=list)
    destroy: bool = False

    @property
    def operations(self) -> list[Operation]:
        """All operations to execute, in wave order."""
        return [op for wave in self.waves for op in wave]

    @property
    def has_changes(self) -> bool:
        return bool(self.waves)

    @property
    def conditional(self) -> list[Operation]:
        """Updates that only run if upstream outputs change."""
        return [op for op in self.operations if op.conditional]

    def counts(self) -> dict[str, int]:
        """Definite operations by action (conditional updates excluded)."""
        counts = {CREATE: 0, UPDATE: 0, DELETE: 0}
        for op in self.operations:
            if op.conditional:
                continue
            counts[op.action] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'stack': self.stack_name,
            'serial': self.serial,
            'destroy': self.destroy,
            'waves': [[op.to_dict() for op in wave] for wave in self.waves],
            'unchanged': [op.address for op in self.noops],
            'conditional': [op.address for op in self.conditional],
            'counts': self.counts(),
        }


def _known_inputs(decl: ResourceDecl, records: dict[str, ResourceRecord]) -> Optional[dict]:
    """Resolve a declaration's configuration from recorded outputs.

    Returns None if any referenced output is not recorded yet.
    """
    def _outputs_for(address: str) -> Optional[dict]:
        record = records.get(address)
        return record.outputs if record is not None else None

    try:
        return resolve_references(decl.configuration, _outputs_for, decl.address)
    except UnresolvedReferenceError:
        return None


def diff_resource(decl: ResourceDecl, prior: Optional[ResourceRecord],
                  records: dict[str, ResourceRecord]) -> tuple[str, str]:
    """Decide the action for one declared resource.

    Returns:
        (action, reason) tuple
    """
    if prior is None:
        return CREATE, 'not in state'
    if prior.tainted:
        return UPDATE, 'did not become ready on last apply'
    if prior.provider != decl.provider:
        return UPDATE, f"provider changed ({prior.provider} -> {decl.provider})"
    if prior.configuration != decl.configuration:
        return UPDATE, 'configuration changed'
    known = _known_inputs(decl, records)
    if known is not None and known != prior.inputs:
        return UPDATE, 'upstream outputs changed'
    return NOOP, ''


def _delete_waves(addresses: list[str], records: dict[str, ResourceRecord]) -> list[list[Operation]]:
    """Build delete waves, dependents before dependencies."""
    dependencies = {a: records[a].dependencies for a in addresses}
    waves = reverse_waves(addresses, dependencies)
    return [
        [Operation(action=DELETE, address=a, prior=records[a],
                   dependencies=[d for d in records[a].dependencies if d in addresses],
                   reason='no longer declared')
         for a in wave]
        for wave in waves
    ]


def _delete_slots(removed: list[str], records: dict[str, ResourceRecord],
                  applied_in: dict[str, int]) -> dict[str, int]:
    """Place each delete after every apply wave that still uses the resource.

    A removed resource may only go once every declared resource whose
    recorded dependencies include it has been created or updated. Slot k
    means "after apply wave k-1"; slot 0 runs before any apply wave.

    Args:
        removed: Recorded addresses no longer declared
        records: All recorded state
        applied_in: Declared address -> index of the apply wave touching it
    """
    dependents: dict[str, list[str]] = {a: [] for a in removed}
    for address, record in records.items():
        for dep in record.dependencies:
            if dep in dependents and dep != address:
                dependents[dep].append(address)

    slots: dict[str, int] = {}
    # Dependents first, so a removed dependent's slot is known before its dependency's
    for wave in reverse_waves(removed, {a: records[a].dependencies for a in removed}):
        for address in wave:
            slot = 0
            for dependent in dependents[address]:
                if dependent in slots:
                    slot = max(slot, slots[dependent])
                elif dependent in applied_in:
                    slot = max(slot, applied_in[dependent] + 1)
            slots[address] = slot
    return slots


def plan(graph: ResourceGraph, store: StateStore) -> Plan:
    """Compute the operations to reconcile state with the graph's stack.

    Declared resources that are otherwise unchanged but depend on a resource
    created or updated in this plan get a conditional update: the executor
    re-resolves their inputs once the upstream wave has finished and only
    calls the provider if those inputs changed.

    Args:
        graph: Validated resource graph of the desired stack
        store: State store (read only during planning)

    Returns:
        Plan whose waves respect dependency order
    """
    records = store.records
    result = Plan(stack_name=graph.stack.name, serial=store.serial)

    apply_waves: list[list[Operation]] = []
    changing: set[str] = set()
    for wave in graph.waves():
        ops: list[Operation] = []
        for node in wave:
            prior = records.get(node.address)
            action, reason = diff_resource(node.decl, prior, records)
            op = Operation(action=action, address=node.address, decl=node.decl,
                           prior=prior, dependencies=list(node.dependencies),
                           reason=reason)
            if action == NOOP and changing.intersection(node.dependencies):
                op.action = UPDATE
                op.conditional = True
                op.reason = 'if upstream outputs change'
            if op.action == NOOP:
                result.noops.append(op)
            else:
                ops.append(op)
                changing.add(node.address)
        if ops:
            apply_waves.append(ops)

    removed = [a for a in records if a not in graph]
    applied_in = {op.address: i for i, wave in enumerate(apply_waves) for op in wave}
    slots = _delete_slots(removed, records, applied_in)
    for index in range(len(apply_waves) + 1):
        group = [a for a in removed if slots.get(a) == index]
        if group:
            result.waves.extend(_delete_waves(group, records))
        if index < len(apply_waves):
            result.waves.append(apply_waves[index])

    counts = result.counts()
    logger.info(f"Plan for '{result.stack_name}': {counts[CREATE]} to create, "
                f"{counts[UPDATE]} to update, {counts[DELETE]} to delete, "
                f"{len(result.conditional)} to check, {len(result.noops)} unchanged")
    return result


def plan_destroy(store: StateStore) -> Plan:
    """Plan deletion of every recorded resource in reverse dependency order."""
    records = store.records
    result = Plan(stack_name=store.stack_name, serial=store.serial, destroy=True)
    if records:
        result.waves = _delete_waves(list(records), records)
    logger.info(f"Destroy plan for '{result.stack_name}': {len(records)} to delete")
    return result
