"""
Main module. Provisioner class defined here.
"""
# encoding: utf-8

import dataclasses
import logging
import os
import sys

from lockfile import AlreadyLocked
from lockfile.pidlockfile import PIDLockFile

from . import generator, helpers, topology
from .allocators import allocate_dirs, allocate_ports, is_port_free
from .command_manager import CommandManager
from .exceptions import CloneError, ProvisioningError, StartupError, ValidationError
from .lifecycle import InstanceController
from .pg import Postgres, parse_engine_version
from .types import ClusterSpec, NodeSpec, TopologyKind

LOCK_FILE = '.pgsandbox.lock'


def _parse_int(value, what):
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationError(f'{what} must be a number, got "{value}"')


def _process_exists(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        pass
    return True


def _parse_list(value):
    if not value:
        return []
    return [item.strip() for item in str(value).split(',') if item.strip()]


def build_cluster_spec(config, engine_version=0):
    """
    Turn merged config into validated ClusterSpec
    """
    replica_count = _parse_int(config.get('cluster', 'replicas'), 'replica count')
    topology_name = config.get('cluster', 'topology')
    try:
        kind = TopologyKind(topology_name)
    except ValueError:
        choices = ', '.join(k.value for k in TopologyKind)
        raise ValidationError(f'unknown topology "{topology_name}", expected one of: {choices}')

    ports = tuple(_parse_int(p, 'port') for p in _parse_list(config.get('cluster', 'ports')))
    dirs = tuple(_parse_list(config.get('cluster', 'dirs')))
    spec = ClusterSpec(
        replica_count=replica_count,
        topology_kind=kind,
        synchronous=config.getboolean('cluster', 'synchronous'),
        archive_dir=config.get('cluster', 'archive_dir') or None,
        logging_enabled=config.getboolean('cluster', 'logging'),
        base_dir=config.get('global', 'base_dir'),
        start_port=_parse_int(config.get('global', 'start_port'), 'start port'),
        ports=ports,
        data_dirs=dirs,
        replication_role=config.get('global', 'replication_role'),
        engine_version=engine_version or 0,
    )
    validate_cluster_spec(spec)
    return spec


def validate_cluster_spec(spec: ClusterSpec):
    if spec.replica_count < 0:
        raise ValidationError(f'replica count must be non-negative, got {spec.replica_count}')
    if not 0 < spec.start_port < 65536:
        raise ValidationError(f'start port {spec.start_port} is out of range')
    if spec.ports:
        if len(spec.ports) != spec.node_count:
            raise ValidationError(f'{len(spec.ports)} ports given for {spec.node_count} nodes')
        if len(set(spec.ports)) != len(spec.ports):
            raise ValidationError(f'ports must be distinct: {list(spec.ports)}')
        for port in spec.ports:
            if not 0 < port < 65536:
                raise ValidationError(f'port {port} is out of range')
    if spec.data_dirs:
        if len(spec.data_dirs) != spec.node_count:
            raise ValidationError(f'{len(spec.data_dirs)} directories given for {spec.node_count} nodes')
        if len({os.path.abspath(d) for d in spec.data_dirs}) != len(spec.data_dirs):
            raise ValidationError(f'directories must be distinct: {list(spec.data_dirs)}')
        for path in spec.data_dirs:
            if os.path.exists(path) and not helpers.is_empty_dir(path):
                raise ValidationError(f'directory {path} exists and is not empty')
    if spec.archive_dir and os.path.exists(spec.archive_dir) and not helpers.is_empty_dir(spec.archive_dir):
        raise ValidationError(f'archive directory {spec.archive_dir} exists and is not empty')
    topology.check_topology_supported(spec.topology_kind, spec.engine_version)


class Provisioner(object):
    """
    Allocates resources, plans topology and brings the cluster up
    """

    def __init__(self, config, cmd_manager=None, db_factory=Postgres, probe=None, port_check=is_port_free, out=None):
        self.config = config
        self._cmd_manager = cmd_manager or CommandManager(
            dict(config.items('commands')), config.get('global', 'bin_dir')
        )
        self._db_factory = db_factory
        self._probe = probe
        self._port_check = port_check
        self._out = out or sys.stdout
        self.spec = None
        self.nodes: dict[int, NodeSpec] = {}
        self.plan = None

    def _print(self, text=''):
        self._out.write(text + '\n')

    def detect_engine_version(self):
        output = self._cmd_manager.get_version()
        version = parse_engine_version(output)
        if version is None:
            raise ValidationError('could not detect PostgreSQL version, check bin_dir setting')
        logging.info('Detected %s (version %d)', output, version)
        return version

    def prepare(self):
        """
        Validate, allocate and plan. Nothing is created here.
        """
        version = self.detect_engine_version()
        self.spec = build_cluster_spec(self.config, version)
        spec = self.spec

        ports = list(spec.ports) or allocate_ports(spec.start_port, spec.node_count, check=self._port_check)
        dirs = list(spec.data_dirs) or allocate_dirs(spec.base_dir, spec.node_count)
        self.nodes = {i: NodeSpec(index=i, port=ports[i], data_dir=dirs[i]) for i in range(spec.node_count)}
        self.spec = dataclasses.replace(spec, ports=tuple(ports), data_dirs=tuple(dirs))
        if os.path.exists(self.tool_path()):
            raise ValidationError(f'management tool {self.tool_path()} already exists')
        self.plan = topology.plan_topology(spec.replica_count, spec.topology_kind)
        return self.spec, self.nodes, self.plan

    def show_plan(self):
        self._print(topology.render_tree(self.plan, self.nodes))
        self._print()
        for index, node in sorted(self.nodes.items()):
            upstream = self.plan.upstream(index)
            self._print(
                '{name:<12} port={port:<6} upstream={up:<10} max_wal_senders={senders:<4} {data_dir}'.format(
                    name=node.name,
                    port=node.port,
                    up=self.nodes[upstream].name if upstream is not None else '-',
                    senders=self.plan.max_wal_senders(index),
                    data_dir=node.data_dir,
                )
            )

    def _lock(self):
        os.makedirs(self.spec.base_dir, exist_ok=True)
        pidfile = PIDLockFile(os.path.join(self.spec.base_dir, LOCK_FILE), timeout=-1)
        try:
            pidfile.acquire()
        except AlreadyLocked:
            pid = pidfile.read_pid()
            if pid and _process_exists(pid):
                raise ValidationError(f'another provisioning (pid {pid}) is running in {self.spec.base_dir}')
            logging.warning('Breaking stale lock %s', pidfile.path)
            pidfile.break_lock()
            pidfile.acquire()
        return pidfile

    def _controller(self):
        return InstanceController(
            self.spec,
            self._cmd_manager,
            probe=self._probe,
            db_factory=self._db_factory,
            conn_string=self.config.get('global', 'local_conn_string'),
            start_timeout=self.config.getint('global', 'start_timeout'),
            retry_delay=self.config.getfloat('global', 'retry_delay'),
            flush_delay=self.config.getfloat('global', 'flush_delay'),
        )

    def tool_path(self):
        return os.path.join(self.spec.base_dir, self.config.get('global', 'tool_name'))

    def _write_tool(self, created):
        metadata = generator.build_metadata(
            self.spec,
            [self.nodes[i] for i in created],
            self.plan,
            self._cmd_manager,
            self.config.get('global', 'local_conn_string'),
        )
        return generator.write_tool(self.tool_path(), metadata)

    def provision(self):
        """
        Create every node in ascending order, then start standbys
        """
        if self.plan is None:
            self.prepare()
        pidfile = self._lock()
        try:
            return self._provision()
        finally:
            pidfile.release()

    def _provision(self):
        spec, nodes, plan = self.spec, self.nodes, self.plan
        retries = self.config.getint('global', 'start_retries')
        controller = self._controller()
        self.show_plan()

        if spec.archive_dir:
            os.makedirs(spec.archive_dir, exist_ok=True)

        try:
            template = controller.create_primary(nodes[0], nodes, plan, retries)
        except (ProvisioningError, StartupError):
            # initialized primary is left on disk, the tool is able to remove it
            if controller.states.get(0) is not None:
                self._write_tool([0])
            raise
        created = [0]

        for index in range(1, spec.node_count):
            node = nodes[index]
            try:
                controller.clone_standby(node, nodes)
                controller.configure_standby(node, nodes, plan, template)
                created.append(index)
            except CloneError as exc:
                logging.error('Skipping %s: %s', node.name, exc)

        try:
            for index in created[1:]:
                controller.ensure_started(nodes[index], retries)
        except StartupError:
            # partially created cluster still gets its tool
            self._write_tool(created)
            raise

        skipped = [nodes[i].name for i in range(1, spec.node_count) if i not in created]
        if skipped:
            logging.warning('Standbys not created: %s', ', '.join(skipped))
        path = self._write_tool(created)
        self._print()
        self._print(f'Cluster is ready. Manage it with {path} status|start|stop|restart|destroy')
        return path
