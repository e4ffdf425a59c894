"""
Port and data directory allocation for new cluster nodes
"""
# encoding: utf-8

import logging
import os
import socket
import time

from .exceptions import ProvisioningError
from .types import node_name

SLOW_SCAN_NOTICE_SEC = 3.0
MAX_PORT = 65535


def is_port_free(port, host='127.0.0.1'):
    """
    Port is free if nobody accepts connections on it
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(1)
        return sock.connect_ex((host, port)) != 0


def allocate_ports(start_port, count, check=is_port_free, clock=time.monotonic):
    """
    Return `count` lowest free ports starting from `start_port`.
    Nothing is reserved: somebody may bind the port before we do.
    """
    ports = []
    started = clock()
    noticed = False
    for port in range(start_port, MAX_PORT + 1):
        if len(ports) == count:
            break
        if check(port):
            ports.append(port)
        if not noticed and clock() - started > SLOW_SCAN_NOTICE_SEC:
            logging.warning('Looking for %d free ports above %d takes a while, still scanning...', count, start_port)
            noticed = True
    if len(ports) < count:
        raise ProvisioningError(
            f'not enough free ports: found {len(ports)} of {count} between {start_port} and {MAX_PORT}'
        )
    logging.debug('Allocated ports: %s', ports)
    return ports


def is_dir_free(path, require_absent=False):
    if not os.path.exists(path):
        return True
    if require_absent:
        return False
    return os.path.isdir(path) and not os.listdir(path)


def allocate_dirs(base_dir, count, require_absent=False):
    """
    Return `count` paths named primary, standby1, ... under base_dir.
    Taken names get a numeric suffix: standby1_1, standby1_2, ...
    """
    dirs = []
    for index in range(count):
        name = node_name(index)
        candidate = os.path.join(base_dir, name)
        suffix = 0
        while candidate in dirs or not is_dir_free(candidate, require_absent):
            suffix += 1
            candidate = os.path.join(base_dir, f'{name}_{suffix}')
        dirs.append(candidate)
    logging.debug('Allocated data directories: %s', dirs)
    return dirs
