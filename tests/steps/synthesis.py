#!/usr/bin/env python
# -*- coding: utf-8 -*-

import os

import yaml
from behave import given, then, when, use_step_matcher

from pgsandbox import manage, settings, topology
from pgsandbox.types import ClusterSpec, NodeSpec, TopologyKind

use_step_matcher("re")


def _node(context, name):
    for node in context.nodes.values():
        if node.name == name:
            return node
    raise AssertionError('no node {name} in cluster'.format(name=name))


def _config(context, name):
    return context.node_configs[_node(context, name).index]


@given('a cluster definition')
def step_cluster_definition(context):
    values = yaml.safe_load(context.text) or {}
    values['topology_kind'] = TopologyKind(values.get('topology_kind', 'fan'))
    if values.get('archive_dir'):
        values['archive_dir'] = os.path.join(context.work_dir, values['archive_dir'])
    spec = ClusterSpec(**values)
    context.spec = spec
    context.plan = topology.plan_topology(spec.replica_count, spec.topology_kind)
    context.nodes = {
        i: NodeSpec(index=i, port=spec.start_port + i, data_dir=os.path.join(context.base_dir, 'node%d' % i))
        for i in range(spec.node_count)
    }


@when('we synthesize configuration of every node')
def step_synthesize(context):
    template = settings.template_settings(context.spec, context.plan)
    context.template = dict(template)
    context.node_configs = {
        index: settings.synthesize(node, context.nodes, context.plan, context.spec, template)
        for index, node in context.nodes.items()
    }


@when('we synthesize configuration of every standby from final settings of primary')
def step_synthesize_from_primary(context):
    primary = settings.synthesize(context.nodes[0], context.nodes, context.plan, context.spec)
    context.node_configs = {0: primary}
    for index, node in context.nodes.items():
        if index:
            context.node_configs[index] = settings.synthesize(
                node, context.nodes, context.plan, context.spec, primary.settings
            )


@when('we write configuration of every node')
def step_write_configuration(context):
    for index, config in context.node_configs.items():
        os.makedirs(config.node.data_dir, exist_ok=True)
        with open(os.path.join(config.node.data_dir, settings.BASE_CONF), 'w') as fobj:
            fobj.write("shared_buffers = '128MB'\n")
        with open(os.path.join(config.node.data_dir, settings.HBA_CONF), 'w') as fobj:
            fobj.write('local   all   all   trust\n')
        settings.write_node_config(config, context.spec.engine_version)


@then('(?P<what>setting|subscription) "(?P<key>[a-z_]+)" of "(?P<name>[a-z0-9]+)" is "(?P<value>[^"]*)"')
def step_setting_is(context, what, key, name, value):
    config = _config(context, name)
    values = config.settings if what == 'setting' else config.subscription
    assert key in values, '{key} is not set on {name}: {values}'.format(key=key, name=name, values=values)
    assert str(values[key]) == value, '{key} of {name} is "{actual}"'.format(key=key, name=name, actual=values[key])


@then('(?P<what>setting|subscription) "(?P<key>[a-z_]+)" of "(?P<name>[a-z0-9]+)" contains "(?P<value>[^"]*)"')
def step_setting_contains(context, what, key, name, value):
    config = _config(context, name)
    values = config.settings if what == 'setting' else config.subscription
    assert value in str(values.get(key)), '{key} of {name} is "{actual}"'.format(
        key=key, name=name, actual=values.get(key)
    )


@then('(?P<what>setting|subscription) "(?P<key>[a-z_]+)" of "(?P<name>[a-z0-9]+)" is not set')
def step_setting_not_set(context, what, key, name):
    config = _config(context, name)
    values = config.settings if what == 'setting' else config.subscription
    assert key not in values, '{key} of {name} is "{actual}"'.format(key=key, name=name, actual=values.get(key))


@then('setting "(?P<key>[a-z_]+)" of every node is "(?P<value>[^"]*)"')
def step_setting_of_every_node(context, key, value):
    for config in context.node_configs.values():
        actual = config.settings.get(key)
        assert str(actual) == value, '{key} of {name} is "{actual}"'.format(
            key=key, name=config.node.name, actual=actual
        )


@then('template has no setting "(?P<key>[a-z_]+)"')
def step_template_has_no(context, key):
    assert key not in context.template, 'template has {key} = {value}'.format(key=key, value=context.template[key])


@then('"(?P<name>[a-z0-9]+)" has (?P<count>[0-9]+) authentication rules')
def step_hba_rules(context, name, count):
    rules = _config(context, name).hba_rules
    assert len(rules) == int(count), '{name} has rules {rules}'.format(name=name, rules=rules)


@then('data directory of "(?P<name>[a-z0-9]+)" (?P<has>has|has no) file "(?P<filename>[a-z_.]+)"')
def step_data_dir_has_file(context, name, has, filename):
    path = os.path.join(_node(context, name).data_dir, filename)
    if has == 'has':
        assert os.path.exists(path), '{path} does not exist'.format(path=path)
    else:
        assert not os.path.exists(path), '{path} exists'.format(path=path)


@then('file "(?P<filename>[a-z_.]+)" of "(?P<name>[a-z0-9]+)" has "(?P<key>[a-z_]+)" equal to "(?P<value>[^"]*)"')
def step_file_has_value(context, filename, name, key, value):
    with open(os.path.join(_node(context, name).data_dir, filename)) as fobj:
        values = manage.parse_settings(fobj.read())
    assert values.get(key) == value, '{key} in {filename} is "{actual}"'.format(
        key=key, filename=filename, actual=values.get(key)
    )


@then('"(?P<name>[a-z0-9]+)" includes "(?P<filename>[a-z_.]+)" into its configuration')
def step_includes(context, name, filename):
    with open(os.path.join(_node(context, name).data_dir, settings.BASE_CONF)) as fobj:
        text = fobj.read()
    directive = "include_if_exists = '{filename}'".format(filename=filename)
    assert text.count(directive) == 1, 'postgresql.conf of {name} is\n{text}'.format(name=name, text=text)


@then('upstream port read from "(?P<name>[a-z0-9]+)" is (?P<port>[0-9]+|not known)')
def step_upstream_port(context, name, port):
    actual = manage.read_upstream_port(_node(context, name).data_dir)
    expected = None if port == 'not known' else int(port)
    assert actual == expected, 'upstream port of {name} is {port}'.format(name=name, port=actual)
