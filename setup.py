#!/usr/bin/env python
# encoding: utf-8

from setuptools import setup

setup(
    name='pgsandbox',
    version='1.0',
    description="Disposable PostgreSQL replication clusters for local testing",
    long_description="Creates primary with streaming standbys in fan, tree or chain topology "
    "and writes a tool to manage them",
    license="PostgreSQL",
    platforms=["Linux", "BSD", "MacOS"],
    zip_safe=False,
    python_requires='>=3.10',
    packages=['pgsandbox'],
    package_dir={'pgsandbox': 'src'},
    install_requires=[
        'psycopg2-binary',
        'PyYAML',
        'lockfile',
    ],
    extras_require={
        'test': [
            'behave',
            'parse_type',
        ],
    },
    entry_points={
        'console_scripts': [
            'pgsandbox = pgsandbox.cli:entry',
        ]
    },
)
