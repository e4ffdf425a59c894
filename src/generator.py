"""
Management tool generator. The tool is a standalone script: source of the
runtime module followed by frozen cluster metadata as a JSON document.
"""
# encoding: utf-8

import inspect
import json
import logging
import os
import stat
import string

from . import manage

TOOL_HEADER = '''#!/usr/bin/env python3
# Management tool of a pgsandbox cluster. Generated, do not edit.
'''

TOOL_FOOTER = string.Template('''

METADATA = $metadata

if __name__ == '__main__':
    sys.exit(run(METADATA, __file__))
''')


def build_metadata(spec, nodes, plan, cmd_manager, conn_string):
    """
    Everything the tool needs, as plain data
    """
    return {
        'version': manage.METADATA_VERSION,
        'topology': spec.topology_kind.value,
        'synchronous': spec.synchronous,
        'archive_dir': spec.archive_dir,
        'engine_version': spec.engine_version,
        'replication_role': spec.replication_role,
        'local_conn_string': conn_string,
        'bin_dir': cmd_manager.bin_dir,
        'commands': cmd_manager.commands,
        'nodes': [
            {
                'index': node.index,
                'name': node.name,
                'port': node.port,
                'data_dir': os.path.abspath(node.data_dir),
                'upstream': plan.upstream(node.index),
            }
            for node in sorted(nodes, key=lambda n: n.index)
        ],
    }


def dump_metadata(metadata):
    return json.dumps(metadata, indent=4, sort_keys=True)


def render_tool(metadata):
    # repr() of the JSON text is a plain string literal
    footer = TOOL_FOOTER.substitute(metadata=repr(dump_metadata(metadata)))
    return TOOL_HEADER + inspect.getsource(manage) + footer


def write_tool(path, metadata):
    with open(path, 'w') as fobj:
        fobj.write(render_tool(metadata))
    mode = os.stat(path).st_mode
    os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    logging.info('Management tool written to %s', path)
    return path
