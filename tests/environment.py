#!/usr/bin/env python
# -*- coding: utf-8 -*-

import os
import shutil
import tempfile


def before_all(context):
    """
    Setup environment
    """
    context.keep_dirs = bool(os.environ.get('KEEP_DIRS'))


def before_scenario(context, _):
    context.work_dir = tempfile.mkdtemp(prefix='pgsandbox-')
    context.base_dir = os.path.join(context.work_dir, 'cluster')
    os.makedirs(context.base_dir)
    context.config_text = ''
    context.custom_commands = {}
    context.recovery_answer = None
    context.cmd = None
    context.databases = None
    context.ports_in_use = set()
    context.provisioner = None
    context.metadata = None
    context.error = None
    context.output = None
    context.outputs = []
    context.exit_code = None


def after_scenario(context, scenario):
    if context.keep_dirs and scenario.status == 'failed':
        print('Files of this scenario were left in %s' % context.work_dir)
        return
    shutil.rmtree(context.work_dir, ignore_errors=True)


# Set DEBUG to debug failed step via pdb
def after_step(context, step):
    if step.status == 'failed' and os.environ.get('DEBUG'):
        # -- ENTER DEBUGGER: Zoom in on failure location.
        import pdb

        pdb.post_mortem(step.exc_traceback)
