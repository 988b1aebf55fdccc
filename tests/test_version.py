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

import pytest

from elastic.operator.utils.version import ElasticsearchVersion, lowest_version


@pytest.mark.parametrize(
    "a, b",
    [
        ("5.6", "5.6.16"),
        ("5.6.16", "6.0.0-rc1"),
        ("6.0.0-rc1", "6.0"),
        ("6.0", "6.8.23"),
        ("7.10.2-SNAPSHOT", "7.10.2"),
        ("6.0.0-beta1", "6.0.0-rc1"),
    ],
)
def test_ordering(a, b):
    assert ElasticsearchVersion(a) < ElasticsearchVersion(b)
    assert ElasticsearchVersion(b) > ElasticsearchVersion(a)


def test_missing_patch_is_zero():
    assert ElasticsearchVersion("6.0") == ElasticsearchVersion("6.0.0")
    assert ElasticsearchVersion("6.0") == "6.0.0"


def test_str_and_repr():
    version = ElasticsearchVersion("7.10.2-SNAPSHOT")
    assert str(version) == "7.10.2-SNAPSHOT"
    assert repr(version) == "ElasticsearchVersion('7.10.2-SNAPSHOT')"


@pytest.mark.parametrize("vstring", ["", "6", "6.x", "six.zero", "6.0.0.1"])
def test_invalid(vstring):
    with pytest.raises(ValueError, match="Invalid version number"):
        ElasticsearchVersion(vstring)


def test_lowest_version():
    assert lowest_version(["6.8.23", "5.6.16", "6.2.4"]) == "5.6.16"
    assert lowest_version(["6.0"]) == "6.0.0"
    assert lowest_version([]) is None
