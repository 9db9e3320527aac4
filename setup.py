# Copyright (C) 2026 Linuxfabrik <info@linuxfabrik.ch>
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 2 of the License, or
# (at your option) any later version.
#
# On Debian systems, the complete text of the GNU General Public License
# version 2 can be found in /usr/share/common-licenses/GPL-2.
#
# SPDX-License-Identifier: GPL-2.0-or-later

from setuptools import find_packages, setup

setup(
    name='policyfabrik',
    version='0.4.0',
    description='Network security policy compiler generating per-device packet filter configurations',
    author='Linuxfabrik GmbH, Zurich/Switzerland',
    author_email='info@linuxfabrik.ch',
    license='GPL-2.0-or-later',
    python_requires='>=3.11',
    package_dir={'': 'src'},
    packages=find_packages('src'),
    package_data={'policyfabrik': ['resources/templates/**/*']},
    install_requires=[
        'Jinja2',
        'PyYAML',
        'SQLAlchemy>=2.0',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'policyfabrik-compile=policyfabrik.cli.compile:main',
            'add-to-policy=policyfabrik.cli.add_to_policy:main',
        ],
    },
)
