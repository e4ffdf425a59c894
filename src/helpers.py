"""
Subprocess, filesystem and retry helpers shared by provisioning code
"""

# encoding: utf-8

import inspect
import logging
import os
import random
import shutil
import subprocess
import time
import traceback
from functools import wraps


def log_traceback(level=logging.ERROR):
    for line in traceback.format_exc().split('\n'):
        logging.log(level, line.rstrip())


def subprocess_popen(cmd, log_cmd=True):
    try:
        if log_cmd:
            logging.debug(cmd)
        return subprocess.Popen(cmd, shell=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError:
        logging.error("Could not run command '%s'", cmd)
        log_traceback()
        return None


def subprocess_call(cmd, log_cmd=True):
    """
    Exit code of the command, its output goes to log on failure
    """
    proc = subprocess_popen(cmd, log_cmd)
    if proc is None:
        return -1
    stdout, stderr = proc.communicate()
    if proc.returncode != 0:
        logging.error("Command '%s' exited with code %d", cmd, proc.returncode)
        for stream in (stdout, stderr):
            for line in stream.decode('utf-8', 'replace').splitlines():
                logging.error(line.rstrip())
    return proc.returncode


def await_for_value(event, timeout: float, event_name: str):
    """
    Call event until it returns something but None, with growing pauses.
    None when timeout expires.
    """
    deadline = time.time() + timeout
    pause = 0.1
    while time.time() < deadline:
        result = event()
        if result is not None:
            return result
        current = min(pause, deadline - time.time())
        if current > 0:
            logging.debug(f'Waiting {current:.2f} for {event_name}')
            time.sleep(current)
        pause = 1.1 * pause + 0.1 * random.random()
    logging.warning('Gave up waiting for %s after %s second(s)', event_name, timeout)
    return None


def copy_dir(src, dst):
    """
    Replace dst with a copy of src, symlinks kept as they are
    """
    if os.path.exists(dst):
        shutil.rmtree(dst)
    shutil.copytree(src, dst, symlinks=True)


def is_empty_dir(path):
    return os.path.isdir(path) and not os.listdir(path)


def return_none_on_error(func):
    """
    Decorator for function to return None on any exception (and log it)
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except Exception:
            log_traceback(logging.DEBUG)
            return None

    return wrapper


def func_name_logger(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        logging.debug('Called: {}'.format(func.__name__))
        return func(*args, **kwargs)

    return wrapper


def decorate_all_class_methods(decorator):
    """
    Wrap instances of the class so that every bound method fetched from
    them goes through decorator
    """

    def class_decorator(Cls):
        class Wrapped(object):
            def __init__(self, *args, **kwargs):
                self._instance = Cls(*args, **kwargs)

            def __getattr__(self, name):
                value = getattr(self._instance, name)
                if inspect.ismethod(value):
                    return decorator(value)
                return value

        Wrapped.__name__ = Cls.__name__
        Wrapped.__doc__ = Cls.__doc__
        return Wrapped

    return class_decorator
