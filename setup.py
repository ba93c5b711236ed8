#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
#
# Host-side protocol library for Ledger-style Bitcoin signing devices
#

# To use this command to install and yet be able to edit the code (here). Great for dev:
#
#   pip install --editable .
#
# with cli dependencies
#
#   pip install --editable '.[cli]'
#
# with test dependencies
#
#   pip install --editable '.[test]'
#
#
import re
from setuptools import setup

# avoid importing the package (and its dependencies) just for this
with open("lwallet/__init__.py") as fh:
    __version__ = re.search(r"__version__ = '([^']+)'", fh.read()).group(1)

# these minimum versions are tested, some earlier values would probably work too.
requirements = [
    'python-bitcoinlib>=0.12.0',
    'coincurve>=15.0.1',
    'base58>=2.1.0',
    'pyscard>=2.0.2',
    'hidapi>=0.14.0',
]

cli_requirements = [
    'click>=8.0.3',
]

test_requirements = [
    'pytest',
]

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name='lwallet',
    version=__version__,
    packages=[ 'lwallet' ],
    python_requires='>3.6.0',
    install_requires=requirements,
    extras_require={
        'cli': cli_requirements,
        'test': test_requirements + cli_requirements,
    },
    description="Sign Bitcoin transactions with a Ledger-style hardware wallet, from Python",
    long_description=long_description,
    long_description_content_type="text/markdown",
    entry_points='''
        [console_scripts]
        lwallet=lwallet.cli:main
    ''',
    classifiers=[
        'Operating System :: POSIX :: Linux',
        'Operating System :: Microsoft :: Windows',
        'Operating System :: MacOS :: MacOS X',
    ],
)
