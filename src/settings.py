"""
Config synthesizer: turns topology plan into per-node PostgreSQL settings,
authentication rules and subscription directives.
"""
# encoding: utf-8

import logging
import os
import shlex
from dataclasses import dataclass, field

from .manage import RECOVERY_CONF, STANDBY_CONF
from .topology import CHAIN_WAL_SENDERS
from .types import ClusterSpec, NodeSpec, Settings, TopologyKind, TopologyPlan

MINIMUM_MAX_CONNECTIONS = 100
FIXED_OVERHEAD = 10

CUSTOM_CONF = 'pgsandbox.conf'
STANDBY_SIGNAL = 'standby.signal'
BASE_CONF = 'postgresql.conf'
HBA_CONF = 'pg_hba.conf'

# Engine versions where behaviour of generated files changes
STANDBY_SIGNAL_VERSION = 120000
WAL_KEEP_SIZE_VERSION = 130000
WAL_LEVEL_REPLICA_VERSION = 90600

PRIMARY_ONLY_KEYS = ('synchronous_standby_names',)


@dataclass
class NodeConfig:
    node: NodeSpec
    settings: Settings = field(default_factory=dict)
    hba_rules: list[str] = field(default_factory=list)
    subscription: Settings = field(default_factory=dict)


def _version_at_least(spec, version):
    # unknown version is treated as a modern engine
    return not spec.engine_version or spec.engine_version >= version


def cluster_max_wal_senders(plan: TopologyPlan):
    if plan.kind == TopologyKind.chain:
        return CHAIN_WAL_SENDERS
    return max(node.max_wal_senders for node in plan.nodes.values())


def max_connections(plan: TopologyPlan):
    """
    Standby refuses to run with max_connections lower than primary's one,
    so the value is computed once and used on every node.
    """
    return cluster_max_wal_senders(plan) + FIXED_OVERHEAD + MINIMUM_MAX_CONNECTIONS


def archive_command(archive_dir):
    target = shlex.quote(archive_dir) + '/%f'
    return f'test ! -f {target} && cp %p {target}'


def restore_command(archive_dir):
    return 'cp {source} %p'.format(source=shlex.quote(archive_dir) + '/%f')


def template_settings(spec: ClusterSpec, plan: TopologyPlan) -> Settings:
    """
    Settings shared by every node. Standbys are configured from this
    snapshot, never from the primary's final settings.
    """
    settings: Settings = {
        'listen_addresses': 'localhost',
        'wal_level': 'replica' if _version_at_least(spec, WAL_LEVEL_REPLICA_VERSION) else 'hot_standby',
        'hot_standby': 'on',
        'max_connections': max_connections(plan),
    }
    if _version_at_least(spec, WAL_KEEP_SIZE_VERSION):
        settings['wal_keep_size'] = '128MB'
    else:
        settings['wal_keep_segments'] = 8
    if spec.archive_dir:
        settings['archive_mode'] = 'on'
        settings['archive_command'] = archive_command(spec.archive_dir)
    if spec.logging_enabled:
        settings['logging_collector'] = 'on'
        settings['log_directory'] = 'log'
        settings['log_filename'] = 'postgresql-%Y-%m-%d.log'
    return settings


def node_wal_senders(node: NodeSpec, spec: ClusterSpec, plan: TopologyPlan):
    """
    Since 12 standby checks that its max_wal_senders is not lower
    than primary's one, so every node gets cluster-wide maximum.
    """
    if _version_at_least(spec, STANDBY_SIGNAL_VERSION):
        return cluster_max_wal_senders(plan)
    return plan.max_wal_senders(node.index)


def hba_rules(spec: ClusterSpec):
    role = spec.replication_role
    return [
        f'local   replication   {role}                  trust',
        f'host    replication   {role}   127.0.0.1/32   trust',
        f'host    replication   {role}   ::1/128        trust',
    ]


def synchronous_standby_names(spec: ClusterSpec):
    return ','.join(f'standby{i}' for i in range(1, spec.replica_count + 1))


def subscription_settings(node: NodeSpec, upstream: NodeSpec, spec: ClusterSpec) -> Settings:
    conninfo = 'host=localhost port={port} user={user} application_name={app}'.format(
        port=upstream.port, user=spec.replication_role, app=node.name
    )
    settings: Settings = {}
    if not _version_at_least(spec, STANDBY_SIGNAL_VERSION):
        settings['standby_mode'] = 'on'
    settings['primary_conninfo'] = conninfo
    settings['recovery_target_timeline'] = 'latest'
    if spec.archive_dir:
        settings['restore_command'] = restore_command(spec.archive_dir)
    return settings


def synthesize(
    node: NodeSpec, nodes: dict[int, NodeSpec], plan: TopologyPlan, spec: ClusterSpec, template: Settings = None
) -> NodeConfig:
    """
    Build full configuration of a single node
    """
    if template is None:
        template = template_settings(spec, plan)
    settings = dict(template)
    for key in PRIMARY_ONLY_KEYS:
        settings.pop(key, None)
    settings['port'] = node.port
    settings['max_wal_senders'] = node_wal_senders(node, spec, plan)

    config = NodeConfig(node=node, settings=settings)
    if node.is_primary:
        if spec.synchronous and spec.replica_count:
            settings['synchronous_standby_names'] = synchronous_standby_names(spec)
        config.hba_rules = hba_rules(spec)
    else:
        upstream = nodes[plan.upstream(node.index)]
        config.subscription = subscription_settings(node, upstream, spec)
    return config


def _quote(value):
    if isinstance(value, bool):
        return 'on' if value else 'off'
    if isinstance(value, int):
        return str(value)
    return "'{}'".format(str(value).replace("'", "''"))


def render_settings(settings: Settings, header=None):
    lines = []
    if header:
        lines.append(f'# {header}')
    for key, value in settings.items():
        lines.append(f'{key} = {_quote(value)}')
    return '\n'.join(lines) + '\n'


def subscription_file(data_dir, engine_version):
    if engine_version and engine_version < STANDBY_SIGNAL_VERSION:
        return os.path.join(data_dir, RECOVERY_CONF)
    return os.path.join(data_dir, STANDBY_CONF)


def ensure_include(data_dir, engine_version):
    """
    Make postgresql.conf pull our files in. Cloned standbys inherit it.
    """
    path = os.path.join(data_dir, BASE_CONF)
    directives = [f"include_if_exists = '{CUSTOM_CONF}'"]
    if not engine_version or engine_version >= STANDBY_SIGNAL_VERSION:
        directives.append(f"include_if_exists = '{STANDBY_CONF}'")
    existing = ''
    if os.path.exists(path):
        with open(path, 'r') as fobj:
            existing = fobj.read()
    missing = [d for d in directives if d not in existing]
    if not missing:
        return
    with open(path, 'a') as fobj:
        fobj.write('\n# Added by pgsandbox\n')
        for directive in missing:
            fobj.write(directive + '\n')


def write_node_config(config: NodeConfig, engine_version=None):
    """
    Write all generated artifacts of the node into its data directory
    """
    data_dir = config.node.data_dir
    ensure_include(data_dir, engine_version)
    with open(os.path.join(data_dir, CUSTOM_CONF), 'w') as fobj:
        fobj.write(render_settings(config.settings, header=f'pgsandbox settings of {config.node.name}'))

    if config.hba_rules:
        with open(os.path.join(data_dir, HBA_CONF), 'a') as fobj:
            fobj.write('\n# Replication access added by pgsandbox\n')
            for rule in config.hba_rules:
                fobj.write(rule + '\n')

    if config.subscription:
        with open(subscription_file(data_dir, engine_version), 'w') as fobj:
            fobj.write(render_settings(config.subscription, header=f'{config.node.name} subscription'))
        if not engine_version or engine_version >= STANDBY_SIGNAL_VERSION:
            open(os.path.join(data_dir, STANDBY_SIGNAL), 'w').close()
    else:
        for name in (STANDBY_SIGNAL, STANDBY_CONF, RECOVERY_CONF):
            path = os.path.join(data_dir, name)
            if os.path.exists(path):
                os.remove(path)
    logging.debug('Wrote configuration of %s into %s', config.node.name, data_dir)
