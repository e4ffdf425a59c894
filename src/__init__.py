"""
Disposable PostgreSQL replication clusters
"""
# encoding: utf-8

import os

from configparser import RawConfigParser

from .manage import DEFAULT_COMMANDS, setup_logging

DEFAULT_CONFIG_FILE = '~/.pgsandbox.conf'

# command line option -> config section
OPTION_SECTIONS = {
    'log_file': 'global',
    'log_level': 'global',
    'base_dir': 'global',
    'start_port': 'global',
    'bin_dir': 'global',
    'replicas': 'cluster',
    'topology': 'cluster',
    'synchronous': 'cluster',
    'archive_dir': 'cluster',
    'logging': 'cluster',
    'ports': 'cluster',
    'dirs': 'cluster',
}


def read_config(filename=None, options=None):
    """
    Merge config with default values and cmd options
    """
    defaults: dict[str, dict] = {
        'global': {
            'log_file': None,
            'log_level': 'info',
            'base_dir': '.',
            'start_port': 5432,
            'bin_dir': '',
            'replication_role': 'replication',
            'local_conn_string': 'dbname=postgres host=localhost connect_timeout=1',
            'start_retries': 1,
            'start_timeout': 60,
            'retry_delay': 1.0,
            'flush_delay': 0.5,
            'tool_name': 'pgsandbox_ctl',
        },
        'cluster': {
            'replicas': 1,
            'topology': 'fan',
            'synchronous': 'no',
            'archive_dir': None,
            'logging': 'no',
            'ports': None,
            'dirs': None,
        },
        'commands': dict(DEFAULT_COMMANDS),
        'debug': {
            'log_func_name': 'no',
        },
    }

    config = RawConfigParser()
    if not filename:
        filename = getattr(options, 'config_file', None) or DEFAULT_CONFIG_FILE

    config.read(os.path.expanduser(filename))

    #
    # Appending default config with default values.
    #
    for section in defaults:
        if not config.has_section(section):
            config.add_section(section)
        for key, value in defaults[section].items():
            if not config.has_option(section, key):
                config.set(section, key, value)

    #
    # Rewriting config with parameters from command line.
    #
    if options:
        for key, value in vars(options).items():
            if value is None or key not in OPTION_SECTIONS:
                continue
            if isinstance(value, bool):
                value = 'yes' if value else 'no'
            config.set(OPTION_SECTIONS[key], key, value)

    return config


def init_logging(config):
    """
    Set log level and format
    """
    setup_logging(
        config.get('global', 'log_level'),
        config.get('global', 'log_file'),
        config.getboolean('debug', 'log_func_name', fallback=False),
    )
