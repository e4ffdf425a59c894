"""
Pg wrapper module. Postgres class defined here.
"""
# encoding: utf-8

import contextlib
import logging
import re

import psycopg2
from psycopg2.sql import SQL, Identifier

from . import helpers, exceptions
from .manage import WAL_POSITION_QUERY, wal_functions

STARTING_UP_MESSAGES = (
    'the database system is starting up',
    'the database system is not yet accepting connections',
)


def parse_engine_version(text):
    """
    Turn 'pg_ctl (PostgreSQL) 16.2' or '9.6.24' into server_version_num form
    """
    if not text:
        return None
    match = re.search(r'(\d+)(?:\.(\d+))?(?:\.(\d+))?', text)
    if not match:
        return None
    major = int(match.group(1))
    minor = int(match.group(2) or 0)
    patch = int(match.group(3) or 0)
    if major >= 10:
        return major * 10000 + minor
    return major * 10000 + minor * 100 + patch


class Postgres(object):
    """
    Point queries against a single local instance
    """

    def __init__(self, port, conn_string='dbname=postgres host=localhost connect_timeout=1'):
        self.port = port
        self.conn_string = f'{conn_string} port={port}'
        self.conn = None
        self.pg_version = None

    def __enter__(self):
        return self

    def __exit__(self, *_):
        self.close()

    def connect(self):
        if self.conn is not None:
            return self.conn
        try:
            self.conn = psycopg2.connect(self.conn_string)
        except psycopg2.OperationalError as exc:
            for substr in STARTING_UP_MESSAGES:
                if substr in str(exc):
                    raise exceptions.PGIsStartingUp(str(exc).strip())
            raise exceptions.QueryError(f'could not connect to "{self.conn_string}": {str(exc).strip()}')
        self.conn.autocommit = True
        self.pg_version = self._get_pg_version()
        return self.conn

    def close(self):
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def _exec_query(self, query, **kwargs):
        cur = self.connect().cursor()
        cur.execute(query, kwargs)
        return cur

    def _fetch_value(self, query, **kwargs):
        with contextlib.closing(self._exec_query(query, **kwargs)) as cur:
            row = cur.fetchone()
            return row[0] if row else None

    def _get_pg_version(self):
        with contextlib.closing(self.conn.cursor()) as cur:
            cur.execute('SHOW server_version_num')
            return int(cur.fetchone()[0])

    def is_in_recovery(self):
        """
        True for standby, False for primary.
        Raises PGIsStartingUp while the answer is not available yet.
        """
        try:
            return bool(self._fetch_value('SELECT pg_is_in_recovery()'))
        except psycopg2.OperationalError as exc:
            for substr in STARTING_UP_MESSAGES:
                if substr in str(exc):
                    raise exceptions.PGIsStartingUp(str(exc).strip())
            raise exceptions.QueryError(str(exc).strip())

    def get_role(self):
        """
        Get role of local postgresql (standby, primary or None if unknown yet)
        """
        try:
            return 'standby' if self.is_in_recovery() else 'primary'
        except exceptions.pgsandboxException as exc:
            logging.debug('Role of instance on port %s is unknown: %s', self.port, exc)
            return None

    @helpers.return_none_on_error
    def get_wal_position(self):
        """
        Current WAL position on primary, last replayed one on standby
        """
        self.connect()
        funcs = wal_functions(self.pg_version)
        query = WAL_POSITION_QUERY.format(**funcs)
        return self._fetch_value(query)

    def create_replication_role(self, role):
        """
        No standby can acknowledge commits yet, so synchronous commit
        is disabled for this session.
        """
        try:
            self._exec_query('SET synchronous_commit TO off').close()
            exists = self._fetch_value('SELECT 1 FROM pg_roles WHERE rolname = %(role)s', role=role)
            if exists:
                logging.info('Replication role %s already exists.', role)
                return True
            query = SQL('CREATE ROLE {role} WITH REPLICATION LOGIN').format(role=Identifier(role))
            self._exec_query(query.as_string(self.conn)).close()
            logging.info('Created replication role %s.', role)
            return True
        except (psycopg2.Error, exceptions.pgsandboxException):
            helpers.log_traceback()
            return False
