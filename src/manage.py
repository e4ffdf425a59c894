"""
Runtime of the management tool: status | start | stop | restart | destroy.

Source of this module is copied into every generated tool, so it imports
nothing but the standard library. PyYAML is needed for yaml output only.
"""
# encoding: utf-8

import argparse
import enum
import json
import logging
import os
import shlex
import shutil
import subprocess
import sys
from dataclasses import asdict, dataclass

METADATA_VERSION = 1

ACTIONS = ('status', 'start', 'stop', 'restart', 'destroy')
SHUTDOWN_MODES = ('smart', 'fast', 'immediate')

SUBSTITUTIONS = {
    'pgdata': '%p',
    'port': '%o',
    'mode': '%m',
    'logfile': '%l',
    'timeout': '%t',
    'role': '%u',
    'conninfo': '%d',
    'query': '%q',
}

DEFAULT_COMMANDS = {
    'initdb': 'initdb -A trust -D %p',
    'pg_start': 'pg_ctl start -s -w -t %t -D %p -l %l',
    'pg_stop': 'pg_ctl stop -s -w -m %m -D %p',
    'pg_status': 'pg_ctl status -D %p',
    'pg_basebackup': 'pg_basebackup -h localhost -p %o -U %u -D %p -X stream',
    'pg_version': 'pg_ctl --version',
    'psql': 'psql -X -A -t -q -d %d -c %q',
}

PG_CTL_RUNNING = 0
PG_CTL_STOPPED = 3
PG_CTL_NO_DATADIR = 4

STARTUP_LOG = 'startup.log'
STANDBY_CONF = 'pgsandbox.standby.conf'
RECOVERY_CONF = 'recovery.conf'

WAL_SEGMENT_UNITS = 0xFFFFFF
WAL_POSITION_QUERY = 'SELECT CASE WHEN pg_is_in_recovery() THEN {replay} ELSE {current} END::text'
NOT_APPLICABLE = 'n/a'


def setup_logging(log_level='info', log_file=None, func_name=False):
    level = getattr(logging, str(log_level).upper())
    format = '{asctime} {levelname:<8}: {message}'
    if func_name:
        format = '{asctime} {levelname:<8}: {funcName:<30}: {message}'
    logging.basicConfig(level=level, format=format, style='{', filename=log_file or None, force=True)


def prepare_command(template, bin_dir='', **kwargs):
    """
    Substitute %x placeholders with quoted values. Bare binary names are
    looked up in bin_dir when it is set.
    """
    command = template
    for arg_name, arg_value in kwargs.items():
        command = command.replace(SUBSTITUTIONS[arg_name], shlex.quote(str(arg_value)))
    if bin_dir:
        binary, _, rest = command.partition(' ')
        if '/' not in binary:
            command = ' '.join(filter(None, [shlex.quote(os.path.join(bin_dir, binary)), rest]))
    return command


class ProcessState(str, enum.Enum):
    running = 'running'
    stopped = 'offline'
    indeterminate = 'starting'
    absent = 'absent'


def state_from_exit_code(code):
    if code == PG_CTL_RUNNING:
        return ProcessState.running
    if code == PG_CTL_STOPPED:
        return ProcessState.stopped
    if code == PG_CTL_NO_DATADIR:
        return ProcessState.absent
    return ProcessState.indeterminate


class ProcessProbe:
    """
    State of an instance is never stored, it is always derived from
    pg_ctl status exit code.
    """

    def __init__(self, cmd_manager):
        self._cmd_manager = cmd_manager

    def probe(self, data_dir):
        if not os.path.isdir(data_dir):
            return ProcessState.absent
        return state_from_exit_code(self._cmd_manager.get_postgresql_status(data_dir))


def wal_functions(version):
    """
    WAL functions were renamed from xlog in 10
    """
    if version and version < 100000:
        return {'current': 'pg_current_xlog_location()', 'replay': 'pg_last_xlog_replay_location()'}
    return {'current': 'pg_current_wal_lsn()', 'replay': 'pg_last_wal_replay_lsn()'}


def wal_position_to_bytes(position):
    """
    'SEGMENT/OFFSET' (both hex) to bytes
    """
    segment, offset = position.strip().split('/')
    return int(segment, 16) * WAL_SEGMENT_UNITS + int(offset, 16)


def compute_lag(upstream_position, local_position):
    if not upstream_position or not local_position:
        return None
    try:
        return wal_position_to_bytes(upstream_position) - wal_position_to_bytes(local_position)
    except ValueError:
        logging.debug('Could not parse WAL positions %r and %r', upstream_position, local_position)
        return None


def parse_settings(text):
    """
    key = value lines of a PostgreSQL config file
    """
    config = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, value = line.split('=', maxsplit=1)
        value = value.strip()
        if value.startswith("'") and value.endswith("'") and len(value) >= 2:
            value = value[1:-1].replace("''", "'")
        config[key.strip()] = value
    return config


def read_upstream_port(data_dir):
    """
    Parse upstream port from the live subscription file of the node
    """
    for name in (STANDBY_CONF, RECOVERY_CONF):
        path = os.path.join(data_dir, name)
        if not os.path.exists(path):
            continue
        with open(path, 'r') as fobj:
            conninfo = parse_settings(fobj.read()).get('primary_conninfo')
        if not conninfo:
            continue
        for param in conninfo.split():
            key, _, value = param.partition('=')
            if key == 'port' and value.isdigit():
                return int(value)
    return None


def load_metadata(text):
    metadata = json.loads(text)
    if not isinstance(metadata, dict) or metadata.get('version') != METADATA_VERSION:
        raise ValueError('unsupported management tool metadata')
    return metadata


class ToolCommands:
    """
    pg_ctl and psql calls of the tool, made from the templates
    the cluster was provisioned with
    """

    def __init__(self, commands=None, bin_dir=''):
        self._commands = dict(DEFAULT_COMMANDS)
        self._commands.update(commands or {})
        self._bin_dir = bin_dir or ''

    def prepare(self, command_name, **kwargs):
        return prepare_command(self._commands.get(command_name, ''), self._bin_dir, **kwargs)

    def _run(self, command_name, log_errors=True, **kwargs):
        command = self.prepare(command_name, **kwargs)
        logging.debug(command)
        proc = subprocess.run(command, shell=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        if proc.returncode != 0 and log_errors:
            logging.error("Command '%s' exited with code %d", command, proc.returncode)
            for line in proc.stderr.decode('utf-8', 'replace').splitlines():
                logging.error(line.rstrip())
        return proc

    def start_postgresql(self, timeout, pgdata, logfile):
        return self._run('pg_start', timeout=timeout, pgdata=pgdata, logfile=logfile).returncode

    def stop_postgresql(self, pgdata, mode='fast'):
        if mode not in SHUTDOWN_MODES:
            raise ValueError(f'unknown shutdown mode: {mode}')
        return self._run('pg_stop', pgdata=pgdata, mode=mode).returncode

    def get_postgresql_status(self, pgdata):
        return self._run('pg_status', log_errors=False, pgdata=pgdata).returncode

    def query(self, conninfo, query):
        """
        First value of the result or None when psql fails
        """
        proc = self._run('psql', log_errors=False, conninfo=conninfo, query=query)
        if proc.returncode != 0:
            logging.debug('Query to "%s" failed: %s', conninfo, proc.stderr.decode('utf-8', 'replace').strip())
            return None
        lines = proc.stdout.decode('utf-8', 'replace').splitlines()
        return lines[0].strip() if lines else None


class PsqlDatabases:
    """
    Calling it gives a session to the local instance on the port
    """

    def __init__(self, commands, engine_version=None):
        self._commands = commands
        self._engine_version = engine_version

    def __call__(self, port, conn_string):
        return PsqlSession(self._commands, f'{conn_string} port={port}', self._engine_version)


class PsqlSession:
    def __init__(self, commands, conninfo, engine_version=None):
        self._commands = commands
        self.conninfo = conninfo
        self._engine_version = engine_version

    def __enter__(self):
        return self

    def __exit__(self, *_):
        pass

    def get_role(self):
        value = self._commands.query(self.conninfo, 'SELECT pg_is_in_recovery()')
        if value not in ('t', 'f'):
            return None
        return 'standby' if value == 't' else 'primary'

    def get_wal_position(self):
        query = WAL_POSITION_QUERY.format(**wal_functions(self._engine_version))
        return self._commands.query(self.conninfo, query) or None


class Colors:
    """ANSI color codes for terminal output."""

    GREEN = '\033[92m'
    RED = '\033[91m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    RESET = '\033[0m'


STATUS_COLORS = {
    'primary': Colors.GREEN,
    'standby': Colors.BLUE,
    'starting': Colors.YELLOW,
    'offline': Colors.RED,
    'absent': Colors.RED,
}


@dataclass
class NodeStatus:
    name: str
    port: int
    upstream_port: int | None
    status: str
    wal_position: str | None
    lag_bytes: int | None

    def as_row(self):
        return [
            self.name,
            str(self.port),
            str(self.upstream_port) if self.upstream_port else '-',
            self.status,
            self.wal_position or NOT_APPLICABLE,
            str(self.lag_bytes) if self.lag_bytes is not None else NOT_APPLICABLE,
        ]


class StatusEngine:
    """
    Collects status of every node independently. Everything is derived
    from pg_ctl exit codes and point queries, nothing is remembered
    between runs.
    """

    def __init__(self, probe, db_factory, conn_string='dbname=postgres host=localhost connect_timeout=1'):
        self._probe = probe
        self._db_factory = db_factory
        self._conn_string = conn_string

    def _query(self, port, func):
        with self._db_factory(port, self._conn_string) as db:
            return func(db)

    def node_status(self, node):
        name, port, data_dir = node['name'], node['port'], node['data_dir']
        state = self._probe.probe(data_dir)
        if state != ProcessState.running:
            return NodeStatus(name, port, None, state.value, None, None)

        role = self._query(port, lambda db: db.get_role())
        if role is None:
            return NodeStatus(name, port, None, ProcessState.indeterminate.value, None, None)

        position = self._query(port, lambda db: db.get_wal_position())
        if role == 'primary':
            return NodeStatus(name, port, None, role, position, None)

        # promotions and manual changes are visible only in live config
        upstream_port = read_upstream_port(data_dir)
        upstream_position = None
        if upstream_port is not None:
            upstream_position = self._query(upstream_port, lambda db: db.get_wal_position())
            if upstream_position is None:
                logging.info('Upstream of %s on port %s is unreachable', name, upstream_port)
        return NodeStatus(name, port, upstream_port, role, position, compute_lag(upstream_position, position))

    def collect(self, nodes):
        return [self.node_status(node) for node in nodes]


HEADERS = ['Instance', 'Port', 'Upstream', 'Status', 'WAL position', 'Lag (bytes)']


def render_table(statuses, color=False):
    """
    Fixed-width table, every column as wide as its longest value
    """
    rows = [s.as_row() for s in statuses]
    widths = [len(h) for h in HEADERS]
    for row in rows:
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(value))

    def line(values, status_color=None):
        cells = []
        for i, value in enumerate(values):
            cell = value.ljust(widths[i])
            if i == 3 and status_color:
                cell = status_color + cell + Colors.RESET
            cells.append(cell)
        return '  '.join(cells).rstrip()

    out = [line(HEADERS), '  '.join('-' * w for w in widths)]
    for status, row in zip(statuses, rows):
        out.append(line(row, STATUS_COLORS.get(status.status) if color else None))
    return '\n'.join(out)


def render_json(statuses):
    return json.dumps([asdict(s) for s in statuses], sort_keys=True, indent=4)


def render_yaml(statuses):
    import yaml

    return yaml.safe_dump([asdict(s) for s in statuses], default_flow_style=False, sort_keys=True)


def render(statuses, fmt='table', color=False):
    if fmt == 'json':
        return render_json(statuses)
    if fmt == 'yaml':
        return render_yaml(statuses)
    return render_table(statuses, color=color)


class ClusterManager:
    """
    Per-node loops over frozen metadata
    """

    def __init__(self, metadata, tool_path=None, cmd_manager=None, probe=None, db_factory=None, out=None):
        self.metadata = metadata
        self.nodes = sorted(metadata['nodes'], key=lambda n: n['index'])
        self.tool_path = tool_path
        self._cmd_manager = cmd_manager or ToolCommands(metadata.get('commands'), metadata.get('bin_dir'))
        self._probe = probe or ProcessProbe(self._cmd_manager)
        self._db_factory = db_factory or PsqlDatabases(self._cmd_manager, metadata.get('engine_version'))
        self._out = out or sys.stdout

    def _print(self, text):
        self._out.write(text + '\n')

    def status(self, fmt='table', color=None):
        engine = StatusEngine(self._probe, self._db_factory, self.metadata.get('local_conn_string'))
        statuses = engine.collect(self.nodes)
        if color is None:
            color = hasattr(self._out, 'isatty') and self._out.isatty()
        self._print(render(statuses, fmt=fmt, color=color))
        return 0

    def start(self, timeout=60):
        failed = 0
        for node in self.nodes:
            state = self._probe.probe(node['data_dir'])
            if state == ProcessState.running:
                logging.info('%s is already running', node['name'])
                continue
            if state == ProcessState.absent:
                logging.error('%s has no data directory %s', node['name'], node['data_dir'])
                failed += 1
                continue
            logfile = os.path.join(node['data_dir'], STARTUP_LOG)
            if self._cmd_manager.start_postgresql(timeout, node['data_dir'], logfile) != 0:
                logging.error('Could not start %s, see %s', node['name'], logfile)
                failed += 1
            else:
                logging.info('%s started on port %d', node['name'], node['port'])
        return 1 if failed else 0

    def stop(self, mode='fast'):
        failed = 0
        # downstream standbys first
        for node in reversed(self.nodes):
            state = self._probe.probe(node['data_dir'])
            if state in (ProcessState.stopped, ProcessState.absent):
                logging.info('%s is not running', node['name'])
                continue
            if self._cmd_manager.stop_postgresql(node['data_dir'], mode) != 0:
                logging.error('Could not stop %s', node['name'])
                failed += 1
            else:
                logging.info('%s stopped (%s)', node['name'], mode)
        return 1 if failed else 0

    def restart(self, mode='fast'):
        stopped = self.stop(mode)
        started = self.start()
        return stopped or started

    def _remove(self, path, what):
        try:
            if os.path.isdir(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
        except OSError as exc:
            logging.error('Could not remove %s %s: %s', what, path, exc)
            return 1
        logging.info('Removed %s %s', what, path)
        return 0

    def destroy(self):
        """
        Best effort: every step is attempted whatever happened before
        """
        failed = 0
        for node in self.nodes:
            data_dir = node['data_dir']
            state = self._probe.probe(data_dir)
            if state not in (ProcessState.stopped, ProcessState.absent):
                if self._cmd_manager.stop_postgresql(data_dir, 'immediate') != 0:
                    logging.error('Could not stop %s', node['name'])
                    failed += 1
            if os.path.exists(data_dir):
                failed += self._remove(data_dir, 'data directory')

        archive_dir = self.metadata.get('archive_dir')
        if archive_dir and os.path.exists(archive_dir):
            failed += self._remove(archive_dir, 'archive')

        if self.tool_path and os.path.exists(self.tool_path):
            failed += self._remove(self.tool_path, 'management tool')
        return 1 if failed else 0


def confirm(prompt='yes'):
    """
    Raise unless user types the prompt back
    """
    if input(f'type "{prompt}" to continue: ').lower() != prompt:
        raise RuntimeError('there was no confirmation')


def parse_args(argv=None, prog=None):
    arg = argparse.ArgumentParser(prog=prog, description='manage pgsandbox cluster')
    arg.add_argument('action', choices=ACTIONS, nargs='?', default='status', help='what to do with the cluster')
    arg.add_argument(
        '-m', '--mode', choices=SHUTDOWN_MODES, default='fast', help='shutdown mode for stop and restart'
    )
    arg.add_argument('-l', '--log-file', dest='log_file', default=None, metavar='<path>', help='write log there')
    arg.add_argument('--log-level', dest='log_level', default='info')
    arg.add_argument('-f', '--format', dest='fmt', choices=('table', 'json', 'yaml'), default='table')
    arg.add_argument('-y', '--yes', action='store_true', default=False, help='do not ask confirmation on destroy')
    return arg.parse_args(argv)


def run(metadata_text, tool_path=None, argv=None):
    """
    Entry point of generated tool
    """
    opts = parse_args(argv, prog=os.path.basename(tool_path) if tool_path else None)
    setup_logging(opts.log_level, opts.log_file)
    try:
        manager = ClusterManager(load_metadata(metadata_text), tool_path=tool_path)
        if opts.action == 'status':
            return manager.status(fmt=opts.fmt)
        if opts.action == 'start':
            return manager.start()
        if opts.action == 'stop':
            return manager.stop(opts.mode)
        if opts.action == 'restart':
            return manager.restart(opts.mode)
        if not opts.yes:
            confirm()
        return manager.destroy()
    except (KeyboardInterrupt, EOFError):
        logging.error('abort')
        return 1
    except (RuntimeError, ValueError, ImportError) as err:
        logging.error(err)
        return 1
