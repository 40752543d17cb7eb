#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

from setuptools import find_packages, setup

setup(
    name="gslb-ingestion",
    version="1.0.0",
    packages=find_packages(include=["gslb", "gslb.*"]),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=["kubernetes>=26.1.0", "pydantic>=2.0", "tenacity>=8.2"],
    extras_require={"test": ["pytest"]},
    entry_points={"console_scripts": ["gslb-ingestion = gslb.main:main"]},
)
