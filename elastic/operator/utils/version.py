# CrateDB Kubernetes Operator
#
# Licensed to Crate.IO GmbH ("Crate") under one or more contributor
# license agreements.  See the NOTICE file distributed with this work for
# additional information regarding copyright ownership.  Crate licenses
# this file to you under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.  You may
# obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS, WITHOUT
# WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.  See the
# License for the specific language governing permissions and limitations
# under the License.
#
# However, if you have executed another commercial license agreement
# with Crate these terms will supersede the license and you may use the
# software solely pursuant to the terms of the relevant commercial agreement.

import re
from typing import Optional, Tuple

from verlib2.distutils.version import Version


class ElasticsearchVersion(Version):
    """Version numbering for Elasticsearch releases.

    An Elasticsearch version consists of two or three dot-separated numeric
    components, optionally followed by a qualifier such as ``-SNAPSHOT`` or
    ``-rc1``. A missing patch component is treated as ``0``, i.e. ``6.0`` and
    ``6.0.0`` compare equal. A version with a qualifier sorts before the
    release it qualifies.

    The following are valid version numbers (shown in sorted order):

    - 5.6
    - 5.6.16
    - 6.0.0-rc1
    - 6.0
    - 6.8.23
    - 7.10.2-SNAPSHOT
    - 7.10.2
    """

    version: Tuple[int, int, int]
    qualifier: Optional[str]

    #: The regular expression to match a version string.
    version_re = re.compile(
        r"""
            ^
            (?P<major>\d+)\.(?P<minor>\d+)  # Every version has a major.minor
            (?:\.(?P<patch>\d+))?  # optionally a patch level
            (?:-(?P<qualifier>[0-9A-Za-z.]+))?  # and a qualifier
            $
        """,
        re.ASCII + re.VERBOSE,
    )

    def __init__(self, vstring: str):
        self.parse(vstring)

    def __repr__(self):
        return f"{self.__class__.__name__}('{self}')"

    def __str__(self):
        vstring = ".".join(map(str, self.version))
        if self.qualifier:
            vstring += f"-{self.qualifier}"
        return vstring

    def parse(self, vstring: str):
        match = self.version_re.match(vstring.strip())
        if not match:
            raise ValueError("Invalid version number: '%s'" % vstring)

        major, minor, patch, qualifier = match.group(
            "major", "minor", "patch", "qualifier"
        )
        self.version = (int(major), int(minor), int(patch or 0))
        self.qualifier = qualifier

    def _cmp(self, other):
        if isinstance(other, str):
            other = ElasticsearchVersion(other)

        if self.version != other.version:
            return -1 if self.version < other.version else 1

        if self.qualifier == other.qualifier:
            return 0
        # A qualified version is a pre-release of the plain one
        if self.qualifier and not other.qualifier:
            return -1
        if not self.qualifier and other.qualifier:
            return 1
        return -1 if self.qualifier < other.qualifier else 1


def lowest_version(versions) -> Optional[str]:
    """
    Return the lowest version string from an iterable of version strings or
    ``None`` if the iterable is empty.
    """
    parsed = [ElasticsearchVersion(v) for v in versions]
    if not parsed:
        return None
    return str(min(parsed))
