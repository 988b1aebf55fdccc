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

import os
import random
from unittest import mock

import pytest
import pytest_asyncio
from kubernetes_asyncio.config import load_kube_config

from elastic.operator.config import config

KUBECONFIG_OPTION = "--kube-config"
KUBECONTEXT_OPTION = "--kube-context"


def pytest_configure(config):
    config.addinivalue_line("markers", "k8s: mark test to require a Kubernetes cluster")


def pytest_addoption(parser):
    parser.addoption(KUBECONFIG_OPTION, help="Path to kubeconfig")
    parser.addoption(KUBECONTEXT_OPTION, help="Name of the context")


def pytest_collection_modifyitems(config, items):
    if config.getoption(KUBECONFIG_OPTION):
        # --kube-config given in cli: do not skip k8s tests
        return
    skip = pytest.mark.skip(reason=f"Need {KUBECONFIG_OPTION} option to run")
    for item in items:
        if "k8s" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(scope="session", autouse=True)
def load_config():
    env = {
        "ES_OPERATOR_LOG_LEVEL": "DEBUG",
        "ES_OPERATOR_TESTING": "true",
        "ES_OPERATOR_ROLLOUT_POLL_INTERVAL": "0.01",
        "ES_OPERATOR_INITIAL_ROLLOUT_TIMEOUT": "1",
        "ES_OPERATOR_NODE_ROLLOUT_TIMEOUT": "1",
        "ES_OPERATOR_CLUSTER_MEMBERSHIP_TIMEOUT": "1",
        "ES_OPERATOR_STATUS_UPDATE_RETRIES": "3",
    }
    # If the environment already has any of these keys defined, leave them be
    for k in env.keys():
        if k in os.environ:
            env[k] = os.environ[k]
    with mock.patch.dict(os.environ, env):
        config.load()
        yield


@pytest_asyncio.fixture(autouse=True)
async def kube_config(request, load_config):
    config = request.config.getoption(KUBECONFIG_OPTION)
    context = request.config.getoption(KUBECONTEXT_OPTION)
    if config:
        await load_kube_config(config_file=config, context=context)


@pytest.fixture(autouse=True)
def faker_seed():
    # This sets a new seed for each test that uses the `Faker` library.
    return random.randint(1, 999999)
