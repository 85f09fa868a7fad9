#!/usr/bin/python

from setuptools import setup, find_packages
from export_squash.version import version

import codecs

with open('requirements.txt') as f:
    requirements = f.read().splitlines()

setup(
    name = "export-squash",
    version = version,
    packages = find_packages(exclude=["tests"]),
    description = 'Docker image export squashing tool',
    license='MIT',
    keywords = 'docker',
    long_description = codecs.open('README.rst', encoding="utf8").read(),
    entry_points = {
        'console_scripts': ['export-squash=export_squash.cli:run'],
    },
    extras_require = {
        'tests': ['mock', 'parameterized', 'pytest'],
    },
    install_requires=requirements
)
