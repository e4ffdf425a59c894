import logging

from . import helpers
from .manage import DEFAULT_COMMANDS, SHUTDOWN_MODES, prepare_command


@helpers.decorate_all_class_methods(helpers.func_name_logger)
class CommandManager:
    """
    Runs PostgreSQL binaries from configurable command templates
    """

    def __init__(self, commands: dict[str, str], bin_dir: str = ''):
        self._commands = dict(DEFAULT_COMMANDS)
        self._commands.update(commands or {})
        self._bin_dir = bin_dir or ''

    @property
    def commands(self):
        return dict(self._commands)

    @property
    def bin_dir(self):
        return self._bin_dir

    def _prepare_command(self, command_name: str, **kwargs):
        return prepare_command(self._commands.get(command_name, ''), self._bin_dir, **kwargs)

    def _exec_command(self, command_name: str, **kwargs):
        command = self._prepare_command(command_name, **kwargs)
        return helpers.subprocess_call(command)

    def initdb(self, pgdata):
        return self._exec_command('initdb', pgdata=pgdata)

    def base_backup(self, pgdata, port, role):
        return self._exec_command('pg_basebackup', pgdata=pgdata, port=port, role=role)

    def start_postgresql(self, timeout, pgdata, logfile):
        return self._exec_command('pg_start', timeout=timeout, pgdata=pgdata, logfile=logfile)

    def stop_postgresql(self, pgdata, mode='fast'):
        if mode not in SHUTDOWN_MODES:
            raise ValueError(f'unknown shutdown mode: {mode}')
        return self._exec_command('pg_stop', pgdata=pgdata, mode=mode)

    def get_postgresql_status(self, pgdata):
        """
        Exit code of pg_ctl status: 0 running, 3 stopped, 4 no data directory
        """
        command = self._prepare_command('pg_status', pgdata=pgdata)
        res = helpers.subprocess_popen(command, log_cmd=False)
        if not res:
            return None
        res.communicate()
        return res.returncode

    def get_version(self, log=True):
        command = self._prepare_command('pg_version')
        res = helpers.subprocess_popen(command, log_cmd=log)
        if not res:
            return None
        (stdout, stderr) = res.communicate()
        if res.returncode != 0:
            logging.error('error occured with command %s', command)
            logging.error('stderr: %s', stderr.decode('utf-8'))
            return None
        return stdout.decode('utf-8').strip()
