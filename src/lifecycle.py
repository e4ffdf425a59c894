"""
Instance lifecycle controller: initializes primary, clones standbys and
brings every node up with bounded retry.
"""
# encoding: utf-8

import enum
import logging
import os
import shutil
import time
from dataclasses import dataclass

from . import helpers, settings
from .exceptions import CloneError, ProvisioningError, StartupError
from .manage import STARTUP_LOG, ProcessProbe, ProcessState
from .pg import Postgres
from .types import ClusterSpec, NodeSpec, Settings, TopologyPlan


class NodeState(str, enum.Enum):
    uninitialized = 'uninitialized'
    initialized = 'initialized'
    cloned = 'cloned'
    configured = 'configured'
    starting = 'starting'
    running = 'running'
    failed = 'failed'


@dataclass(frozen=True)
class StartResult:
    started: bool
    attempts: int
    state: ProcessState

    @property
    def reason(self):
        if self.started:
            return None
        return f'instance is {self.state.value} after {self.attempts} attempt(s)'


class InstanceController:
    """
    Drives every node through uninitialized -> ... -> running
    """

    def __init__(
        self,
        spec: ClusterSpec,
        cmd_manager,
        probe=None,
        db_factory=Postgres,
        conn_string='dbname=postgres host=localhost connect_timeout=1',
        start_timeout=60,
        retry_delay=1.0,
        flush_delay=0.5,
    ):
        self.spec = spec
        self._cmd_manager = cmd_manager
        self._probe = probe or ProcessProbe(cmd_manager)
        self._db_factory = db_factory
        self._conn_string = conn_string
        self._start_timeout = start_timeout
        self._retry_delay = retry_delay
        self._flush_delay = flush_delay
        self.states: dict[int, NodeState] = {}

    def _set_state(self, node: NodeSpec, state: NodeState):
        logging.debug('%s: %s -> %s', node.name, self.states.get(node.index, NodeState.uninitialized).value, state.value)
        self.states[node.index] = state

    def _connect(self, node: NodeSpec):
        return self._db_factory(node.port, self._conn_string)

    def create_primary(self, node: NodeSpec, nodes: dict[int, NodeSpec], plan: TopologyPlan, retries=1) -> Settings:
        """
        Initialize, configure and start the primary.
        Returns template settings standbys are configured from.
        """
        logging.info('Initializing %s in %s', node.name, node.data_dir)
        os.makedirs(node.data_dir, mode=0o700, exist_ok=True)
        if self._cmd_manager.initdb(node.data_dir) != 0:
            raise ProvisioningError(f'could not initialize {node.name} in {node.data_dir}')
        self._set_state(node, NodeState.initialized)

        template = settings.template_settings(self.spec, plan)
        # Snapshot is taken before primary-only settings are added
        snapshot = dict(template)
        settings.write_node_config(settings.synthesize(node, nodes, plan, self.spec, template), self.spec.engine_version)
        self._set_state(node, NodeState.configured)

        self.ensure_started(node, retries)
        self._create_replication_role(node)
        return snapshot

    def _create_replication_role(self, node: NodeSpec):
        def primary_answers():
            with self._connect(node) as db:
                return True if db.get_role() == 'primary' else None

        if not helpers.await_for_value(primary_answers, self._start_timeout, f'{node.name} to accept queries'):
            raise ProvisioningError(f'{node.name} does not accept queries on port {node.port}')
        with self._connect(node) as db:
            if not db.create_replication_role(self.spec.replication_role):
                raise ProvisioningError(f'could not create replication role {self.spec.replication_role}')

    def clone_standby(self, node: NodeSpec, nodes: dict[int, NodeSpec]):
        """
        First standby is a base backup of the primary, others are copies
        of the first standby which has not diverged yet.
        """
        if node.index == 1:
            primary = nodes[0]
            logging.info('Cloning %s from %s (port %d)', node.name, primary.name, primary.port)
            res = self._cmd_manager.base_backup(node.data_dir, primary.port, self.spec.replication_role)
            if res != 0:
                self._cleanup_failed_clone(node)
                raise CloneError(f'base backup of {primary.name} into {node.data_dir} failed with code {res}')
        else:
            source = nodes.get(1)
            if source is None or self.states.get(1) not in (NodeState.configured, NodeState.cloned):
                raise CloneError(f'{node.name} cannot be cloned: standby1 is not available')
            logging.info('Cloning %s from %s', node.name, source.name)
            try:
                helpers.copy_dir(source.data_dir, node.data_dir)
            except (OSError, shutil.Error) as exc:
                self._cleanup_failed_clone(node)
                raise CloneError(f'could not copy {source.data_dir} into {node.data_dir}: {exc}')
        os.chmod(node.data_dir, 0o700)
        self._set_state(node, NodeState.cloned)

    def _cleanup_failed_clone(self, node: NodeSpec):
        self._set_state(node, NodeState.failed)
        if os.path.exists(node.data_dir):
            shutil.rmtree(node.data_dir, ignore_errors=True)

    def configure_standby(self, node: NodeSpec, nodes: dict[int, NodeSpec], plan: TopologyPlan, template: Settings):
        config = settings.synthesize(node, nodes, plan, self.spec, template)
        settings.write_node_config(config, self.spec.engine_version)
        self._set_state(node, NodeState.configured)

    def start_node(self, node: NodeSpec, retries=1) -> StartResult:
        """
        Start instance and verify it is running. Every failed attempt is
        re-probed once after a short delay before the next start.
        """
        attempt = 0
        while True:
            attempt += 1
            self._set_state(node, NodeState.starting)
            logging.info('Starting %s on port %d (attempt %d)', node.name, node.port, attempt)
            logfile = os.path.join(node.data_dir, STARTUP_LOG)
            self._cmd_manager.start_postgresql(self._start_timeout, node.data_dir, logfile)
            time.sleep(self._flush_delay)
            os.sync()

            state = self._probe.probe(node.data_dir)
            if state != ProcessState.running and retries > 0:
                logging.warning('%s is %s, checking again in %.1f second(s)', node.name, state.value, self._retry_delay)
                time.sleep(self._retry_delay)
                state = self._probe.probe(node.data_dir)

            if state == ProcessState.running:
                self._set_state(node, NodeState.running)
                return StartResult(started=True, attempts=attempt, state=state)
            if retries <= 0:
                self._set_state(node, NodeState.failed)
                return StartResult(started=False, attempts=attempt, state=state)
            retries -= 1

    def ensure_started(self, node: NodeSpec, retries=1):
        result = self.start_node(node, retries)
        if not result.started:
            logging.error('Could not start %s: %s. See %s', node.name, result.reason,
                          os.path.join(node.data_dir, STARTUP_LOG))
            raise StartupError(f'{node.name} failed to start: {result.reason}')
        logging.info('%s is running on port %d', node.name, node.port)
        return result

