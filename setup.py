#!/usr/bin/env python3
# Copyright 2008-2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

from setuptools import find_packages, setup

setup(
    name='wazo-tftp',
    version='0.1',
    description='Wazo TFTP client and server',
    author='Wazo Authors',
    author_email='dev@wazo.community',
    url='http://wazo.community',
    license='GPLv3',
    packages=find_packages(exclude=['*.tests']),
    python_requires='>=3.9',
    install_requires=[
        'Twisted',
        'pydantic>=2',
        'PyYAML',
    ],
    extras_require={
        'test': [
            'pytest',
            'PyHamcrest',
        ],
    },
    entry_points={
        'console_scripts': [
            'wazo-tftp=wazo_tftp.main:main',
        ],
    },
)
