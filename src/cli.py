# coding: utf-8
"""
Command line interface:
    - create: provision a new cluster
    - plan: show what would be created
"""
import argparse
import logging
import sys

from . import read_config, init_logging
from .exceptions import pgsandboxException, ValidationError
from .main import Provisioner
from .types import TopologyKind


def entry():
    """
    Entry point.
    """
    opts = parse_args()
    conf = read_config(
        filename=opts.config_file,
        options=opts,
    )
    init_logging(conf)
    try:
        opts.action(opts, conf)
    except (KeyboardInterrupt, EOFError):
        logging.error('abort')
        sys.exit(1)
    except ValidationError as err:
        logging.error('invalid cluster definition: %s', err)
        sys.exit(1)
    except (pgsandboxException, RuntimeError) as err:
        logging.error(err)
        sys.exit(1)
    except Exception as exc:
        logging.exception(exc)
        sys.exit(1)


def create(opts, conf):
    """
    Provision cluster and write its management tool
    """
    Provisioner(conf).provision()


def plan(opts, conf):
    """
    Show topology and allocated resources without creating anything
    """
    provisioner = Provisioner(conf)
    provisioner.prepare()
    provisioner.show_plan()


def _add_cluster_args(parser):
    parser.add_argument(
        '-n', '--replicas', dest='replicas', type=str, metavar='<int>', default=None, help='number of standbys'
    )
    parser.add_argument(
        '-t',
        '--topology',
        dest='topology',
        choices=[k.value for k in TopologyKind],
        default=None,
        help='fan: all standbys stream from primary; tree: standby1 serves the rest; chain: each from the previous',
    )
    parser.add_argument(
        '-s', '--sync', dest='synchronous', action='store_true', default=None, help='use synchronous replication'
    )
    parser.add_argument(
        '-a', '--archive-dir', dest='archive_dir', metavar='<path>', default=None, help='shared WAL archive'
    )
    parser.add_argument(
        '--logging', dest='logging', action='store_true', default=None, help='enable logging collector on every node'
    )
    parser.add_argument(
        '-p', '--port', dest='start_port', type=str, metavar='<port>', default=None, help='lowest port to use'
    )
    parser.add_argument(
        '-d', '--base-dir', dest='base_dir', metavar='<path>', default=None, help='where node directories are created'
    )
    parser.add_argument(
        '--ports', dest='ports', metavar='<port>,<port>,...', default=None, help='explicit ports, primary first'
    )
    parser.add_argument(
        '--dirs', dest='dirs', metavar='<path>,<path>,...', default=None, help='explicit data directories'
    )
    parser.add_argument(
        '-b', '--bin-dir', dest='bin_dir', metavar='<path>', default=None, help='directory with PostgreSQL binaries'
    )


def parse_args(argv=None):
    """
    Parse multiple commands.
    """
    arg = argparse.ArgumentParser(
        description="""
        disposable PostgreSQL replication clusters
        """
    )
    arg.add_argument(
        '-c',
        '--config',
        dest='config_file',
        type=str,
        metavar='<path>',
        default=None,
        help='path to pgsandbox config file',
    )
    arg.add_argument('-l', '--log-file', dest='log_file', metavar='<path>', default=None, help='write log there')
    arg.add_argument('--log-level', dest='log_level', default=None, help='debug, info, warning or error')
    arg.set_defaults(action=lambda *_: arg.print_help())

    subarg = arg.add_subparsers(
        help='possible actions', title='subcommands', description='for more info, see <subcommand> -h'
    )

    create_arg = subarg.add_parser('create', help='create and start a new cluster')
    _add_cluster_args(create_arg)
    create_arg.set_defaults(action=create)

    plan_arg = subarg.add_parser('plan', help='show topology without creating anything')
    _add_cluster_args(plan_arg)
    plan_arg.set_defaults(action=plan)

    return arg.parse_args(argv)
