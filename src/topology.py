"""
Topology planner: maps replica count and topology kind to the upstream
subscription graph and per-node WAL sender capacity.
"""
# encoding: utf-8

from .exceptions import ValidationError
from .types import NodePlan, TopologyKind, TopologyPlan, node_name

# Spare WAL senders for pg_basebackup connections (one for data, one for WAL
# streaming) and one reconnecting walreceiver.
HEADROOM = 3
# Standby 1 of a tree serves every sibling; its own base backup is taken from
# the primary, so it needs one slot less.
TREE_HUB_HEADROOM = 2
CHAIN_WAL_SENDERS = HEADROOM

CASCADING_MIN_VERSION = 90200
CHAIN_MARKER_EVERY = 10


def check_topology_supported(kind, engine_version):
    """
    Cascading replication appeared in 9.2, only fan works before it.
    """
    kind = TopologyKind(kind)
    if kind == TopologyKind.fan or not engine_version:
        return
    if engine_version < CASCADING_MIN_VERSION:
        raise ValidationError(
            f'topology "{kind.value}" needs cascading replication, '
            f'which is not supported by engine version {engine_version}'
        )


def plan_topology(replica_count, kind):
    """
    Build upstream graph for given number of standbys
    """
    if replica_count < 0:
        raise ValidationError(f'replica count must be non-negative, got {replica_count}')
    kind = TopologyKind(kind)
    if kind == TopologyKind.fan:
        nodes = _plan_fan(replica_count)
    elif kind == TopologyKind.tree:
        nodes = _plan_tree(replica_count)
    else:
        nodes = _plan_chain(replica_count)
    return TopologyPlan(kind=kind, nodes=nodes)


def _plan_fan(replica_count):
    nodes = {0: NodePlan(upstream=None, max_wal_senders=replica_count + HEADROOM)}
    for i in range(1, replica_count + 1):
        nodes[i] = NodePlan(upstream=0, max_wal_senders=0)
    return nodes


def _plan_tree(replica_count):
    nodes = {0: NodePlan(upstream=None, max_wal_senders=HEADROOM)}
    for i in range(1, replica_count + 1):
        if i == 1:
            nodes[i] = NodePlan(upstream=0, max_wal_senders=replica_count + TREE_HUB_HEADROOM)
        else:
            nodes[i] = NodePlan(upstream=1, max_wal_senders=0)
    return nodes


def _plan_chain(replica_count):
    nodes = {}
    for i in range(replica_count + 1):
        upstream = None if i == 0 else i - 1
        senders = 0 if i == replica_count else CHAIN_WAL_SENDERS
        nodes[i] = NodePlan(upstream=upstream, max_wal_senders=senders)
    return nodes


def depth(plan, index):
    hops = 0
    while plan.upstream(index) is not None:
        index = plan.upstream(index)
        hops += 1
    return hops


def render_tree(plan, nodes=None):
    """
    Return ASCII tree of the upstream graph, one line per node.
    `nodes` may map index to NodeSpec to show ports next to names.
    """
    lines = []

    def label(index):
        name = node_name(index)
        if nodes and index in nodes:
            return f'{name} ({nodes[index].port})'
        return name

    def walk(index, level):
        if level == 0:
            lines.append(label(index))
        else:
            # marker every few levels, then indentation starts over
            shown = (level - 1) % CHAIN_MARKER_EVERY + 1
            if level > 1 and shown == 1:
                lines.append('    ' * CHAIN_MARKER_EVERY + '...')
            lines.append('    ' * (shown - 1) + '└── ' + label(index))
        for child in plan.children(index):
            walk(child, level + 1)

    walk(0, 0)
    return '\n'.join(lines)
