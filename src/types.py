import enum
from dataclasses import dataclass, field

Settings = dict[str, str | int]


class TopologyKind(str, enum.Enum):
    fan = 'fan'
    tree = 'tree'
    chain = 'chain'


@dataclass(frozen=True)
class ClusterSpec:
    replica_count: int
    topology_kind: TopologyKind = TopologyKind.fan
    synchronous: bool = False
    archive_dir: str | None = None
    logging_enabled: bool = False
    base_dir: str = '.'
    start_port: int = 5432
    ports: tuple[int, ...] = ()
    data_dirs: tuple[str, ...] = ()
    replication_role: str = 'replication'
    engine_version: int = 0

    @property
    def node_count(self):
        return self.replica_count + 1


@dataclass(frozen=True)
class NodeSpec:
    index: int
    port: int
    data_dir: str

    @property
    def name(self):
        return node_name(self.index)

    @property
    def is_primary(self):
        return self.index == 0


@dataclass(frozen=True)
class NodePlan:
    upstream: int | None
    max_wal_senders: int


@dataclass(frozen=True)
class TopologyPlan:
    kind: TopologyKind
    nodes: dict[int, NodePlan] = field(default_factory=dict)

    def upstream(self, index):
        return self.nodes[index].upstream

    def max_wal_senders(self, index):
        return self.nodes[index].max_wal_senders

    def children(self, index):
        return [i for i, node in sorted(self.nodes.items()) if node.upstream == index]


def node_name(index):
    if index == 0:
        return 'primary'
    return f'standby{index}'
