#!/usr/bin/env python
# -*- coding: utf-8 -*-

import ast
import logging
import os
import shutil

from pgsandbox import manage, read_config, settings
from pgsandbox.manage import DEFAULT_COMMANDS, SHUTDOWN_MODES

PG_CTL_RUNNING = 0
PG_CTL_STOPPED = 3
PG_CTL_NO_DATADIR = 4

DEFAULT_VERSION_TEXT = 'pg_ctl (PostgreSQL) 16.2'
DEFAULT_WAL_POSITION = '0/3000060'


class FakeCommandManager(object):
    """
    Command manager keeping instances in memory. Data directories are
    real, so generated files may be inspected.
    """

    def __init__(self, version_text=DEFAULT_VERSION_TEXT):
        self.version_text = version_text
        self.calls = []
        self.running = set()
        self.port_dirs = {}
        # command name -> names of data directories it fails for
        self.failing = {}
        # data directory name -> number of failing starts, -1 is forever
        self.start_failures = {}

    @property
    def commands(self):
        return dict(DEFAULT_COMMANDS)

    @property
    def bin_dir(self):
        return ''

    def _fails(self, command, pgdata):
        return os.path.basename(os.path.normpath(pgdata)) in self.failing.get(command, ())

    def starts(self, pgdata):
        return len([c for c in self.calls if c[0] == 'pg_start' and c[1] == os.path.abspath(pgdata)])

    def initdb(self, pgdata):
        self.calls.append(('initdb', os.path.abspath(pgdata)))
        if self._fails('initdb', pgdata):
            return 1
        os.makedirs(pgdata, exist_ok=True)
        for name, text in (
            ('PG_VERSION', '16\n'),
            (settings.BASE_CONF, "# initdb defaults\nshared_buffers = '128MB'\n"),
            (settings.HBA_CONF, 'local   all   all   trust\n'),
        ):
            with open(os.path.join(pgdata, name), 'w') as fobj:
                fobj.write(text)
        return 0

    def base_backup(self, pgdata, port, role):
        self.calls.append(('pg_basebackup', os.path.abspath(pgdata), port, role))
        source = self.port_dirs.get(port)
        if self._fails('pg_basebackup', pgdata) or source not in self.running:
            return 1
        shutil.copytree(
            source, pgdata, ignore=shutil.ignore_patterns('postmaster.pid', 'startup.log'), dirs_exist_ok=True
        )
        return 0

    def start_postgresql(self, timeout, pgdata, logfile):
        pgdata = os.path.abspath(pgdata)
        self.calls.append(('pg_start', pgdata))
        name = os.path.basename(pgdata)
        failures = self.start_failures.get(name, 0)
        if failures:
            if failures > 0:
                self.start_failures[name] = failures - 1
            return 1
        with open(os.path.join(pgdata, settings.CUSTOM_CONF)) as fobj:
            port = int(manage.parse_settings(fobj.read())['port'])
        self.port_dirs[port] = pgdata
        self.running.add(pgdata)
        with open(logfile, 'a') as fobj:
            fobj.write('database system is ready to accept connections\n')
        return 0

    def stop_postgresql(self, pgdata, mode='fast'):
        if mode not in SHUTDOWN_MODES:
            raise ValueError(f'unknown shutdown mode: {mode}')
        pgdata = os.path.abspath(pgdata)
        self.calls.append(('pg_stop', pgdata, mode))
        self.running.discard(pgdata)
        return 0

    def get_postgresql_status(self, pgdata):
        pgdata = os.path.abspath(pgdata)
        if not os.path.isdir(pgdata):
            return PG_CTL_NO_DATADIR
        return PG_CTL_RUNNING if pgdata in self.running else PG_CTL_STOPPED

    def get_version(self, log=True):
        return self.version_text


class FakeDatabases(object):
    """
    Stands for Postgres class: calling it gives a connection to the port
    """

    def __init__(self, cmd_manager):
        self.cmd_manager = cmd_manager
        self.positions = {}
        self.unreachable = set()
        self.created_roles = []
        self.refuse_roles = False

    def __call__(self, port, conn_string=None):
        return FakePostgres(self, port)

    def data_dir(self, port):
        if port in self.unreachable:
            return None
        pgdata = self.cmd_manager.port_dirs.get(port)
        if pgdata not in self.cmd_manager.running:
            return None
        return pgdata


class FakePostgres(object):
    def __init__(self, databases, port):
        self.databases = databases
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *_):
        pass

    def is_in_recovery(self):
        pgdata = self.databases.data_dir(self.port)
        return any(
            os.path.exists(os.path.join(pgdata, name)) for name in (settings.STANDBY_SIGNAL, settings.RECOVERY_CONF)
        )

    def get_role(self):
        if self.databases.data_dir(self.port) is None:
            return None
        return 'standby' if self.is_in_recovery() else 'primary'

    def get_wal_position(self):
        if self.databases.data_dir(self.port) is None:
            return None
        return self.databases.positions.get(self.port, DEFAULT_WAL_POSITION)

    def create_replication_role(self, role):
        if self.databases.refuse_roles:
            return False
        self.databases.created_roles.append(role)
        return True


class PortsInUse(object):
    def __init__(self, ports=()):
        self.ports = set(ports)

    def __call__(self, port, host='127.0.0.1'):
        return port not in self.ports


def make_config(context, text=''):
    """
    Config read from scenario text, with cluster placed into scenario
    directory and timings shortened
    """
    path = os.path.join(context.work_dir, 'pgsandbox.conf')
    with open(path, 'w') as fobj:
        fobj.write(text)
    config = read_config(filename=path)
    config.set('global', 'base_dir', context.base_dir)
    for key, value in (('start_timeout', '1'), ('retry_delay', '0'), ('flush_delay', '0')):
        config.set('global', key, value)
    return config


def tool_metadata(path):
    """
    Extract METADATA literal from generated tool without running it
    """
    with open(path) as fobj:
        tree = ast.parse(fobj.read())
    for node in tree.body:
        if isinstance(node, ast.Assign) and any(getattr(t, 'id', None) == 'METADATA' for t in node.targets):
            return ast.literal_eval(node.value)
    raise AssertionError(f'no METADATA in {path}')


class SlowCheck(object):
    """
    Port check moving a fake clock forward on every call
    """

    def __init__(self, seconds):
        self.seconds = seconds
        self.now = 0.0

    def clock(self):
        return self.now

    def __call__(self, port, host='127.0.0.1'):
        self.now += self.seconds
        return True


class LogRecords(logging.Handler):
    """
    Collects records of the root logger while used as context manager
    """

    def __init__(self, level=logging.WARNING):
        super().__init__(level)
        self.records = []
        self._root_level = None

    def emit(self, record):
        self.records.append(record)

    def messages(self):
        return [record.getMessage() for record in self.records]

    def __enter__(self):
        root = logging.getLogger()
        self._root_level = root.level
        root.setLevel(min(root.level or logging.WARNING, self.level))
        root.addHandler(self)
        return self

    def __exit__(self, *_):
        root = logging.getLogger()
        root.removeHandler(self)
        root.setLevel(self._root_level)


PG_CTL_SCRIPT = '''#!/bin/sh
action=$1
while [ $# -gt 0 ]; do
    if [ "$1" = "-D" ]; then
        pgdata=$2
    fi
    shift
done
echo "$action $pgdata" >> "$(dirname "$0")/calls.log"
case "$action" in
    status)
        [ -f "$pgdata/postmaster.pid" ] && exit 0
        [ -d "$pgdata" ] && exit 3
        exit 4 ;;
    start)
        touch "$pgdata/postmaster.pid" ;;
    stop)
        rm -f "$pgdata/postmaster.pid" ;;
esac
exit 0
'''

# answers/<port>/recovery and answers/<port>/position next to the script
PSQL_SCRIPT = '''#!/bin/sh
while [ $# -gt 0 ]; do
    case "$1" in
        -d) conninfo=$2 ;;
        -c) query=$2 ;;
    esac
    shift
done
answers="$(dirname "$0")/answers/${conninfo##*port=}"
[ -d "$answers" ] || exit 2
case "$query" in
    *CASE*) cat "$answers/position" ;;
    *) cat "$answers/recovery" ;;
esac
'''


def write_fake_binaries(bin_dir):
    os.makedirs(os.path.join(bin_dir, 'answers'), exist_ok=True)
    for name, text in (('pg_ctl', PG_CTL_SCRIPT), ('psql', PSQL_SCRIPT)):
        path = os.path.join(bin_dir, name)
        with open(path, 'w') as fobj:
            fobj.write(text)
        os.chmod(path, 0o755)


def fake_binary_calls(bin_dir, action):
    path = os.path.join(bin_dir, 'calls.log')
    if not os.path.exists(path):
        return []
    with open(path) as fobj:
        calls = [line.split(' ', 1) for line in fobj.read().splitlines()]
    return [os.path.basename(pgdata) for name, pgdata in calls if name == action]
