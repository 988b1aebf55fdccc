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

import logging

import kopf
from prometheus_client import start_http_server

from elastic.operator.config import config
from elastic.operator.constants import (
    API_GROUP,
    API_VERSION,
    CLUSTER_RECONCILE_ID,
    KOPF_STATE_STORE_PREFIX,
    RESOURCE_ELASTICSEARCH,
)
from elastic.operator.handlers.handle_delete_elasticsearch import (
    delete_elasticsearch,
)
from elastic.operator.handlers.handle_ping_elasticsearch_status import (
    ping_elasticsearch_status,
)
from elastic.operator.handlers.handle_reconcile_elasticsearch import (
    reconcile_elasticsearch,
)
from elastic.operator.kube_auth import login_via_kubernetes_asyncio
from elastic.operator.utils import es


@kopf.on.startup()
async def startup(settings: kopf.OperatorSettings, **_kwargs):
    config.load()

    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix=KOPF_STATE_STORE_PREFIX, key="last", v1=False
    )
    settings.persistence.finalizer = f"operator.{API_GROUP}/finalizer"
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix=KOPF_STATE_STORE_PREFIX, v1=False
    )

    # Timeout passed along to the Kubernetes API as timeoutSeconds=x
    settings.watching.server_timeout = 300
    # Total number of seconds for a whole watch request
    settings.watching.client_timeout = 300
    settings.watching.connect_timeout = 30
    settings.watching.reconnect_backoff = 1

    # Only start the prometheus server in non-testing mode.
    if not config.TESTING:
        start_http_server(config.PROMETHEUS_PORT)


@kopf.on.login()
async def login(**kwargs):
    return await login_via_kubernetes_asyncio(**kwargs)


@kopf.on.create(API_GROUP, API_VERSION, RESOURCE_ELASTICSEARCH, id=CLUSTER_RECONCILE_ID)
@kopf.on.update(API_GROUP, API_VERSION, RESOURCE_ELASTICSEARCH, id=CLUSTER_RECONCILE_ID)
@kopf.on.resume(API_GROUP, API_VERSION, RESOURCE_ELASTICSEARCH, id=CLUSTER_RECONCILE_ID)
@es.on.error(error_handler=es.record_degraded_condition)
@es.timeout(timeout=float(config.RECONCILE_TIMEOUT))
async def cluster_reconcile(
    namespace: str,
    name: str,
    body: kopf.Body,
    status: kopf.Status,
    logger: logging.Logger,
    **_kwargs,
):
    """
    Handles creation of and changes to Elasticsearch clusters.
    """
    await reconcile_elasticsearch(namespace, name, body, status, logger)


@kopf.timer(
    API_GROUP,
    API_VERSION,
    RESOURCE_ELASTICSEARCH,
    interval=config.RECONCILE_INTERVAL,
    idle=config.RECONCILE_INTERVAL,
)
async def cluster_reconcile_periodically(
    namespace: str,
    name: str,
    body: kopf.Body,
    status: kopf.Status,
    logger: logging.Logger,
    **_kwargs,
):
    """
    Restart campaigns wait for the cluster to recover between their phases.
    Reconciling periodically lets them continue without a change to the
    resource.
    """
    await reconcile_elasticsearch(namespace, name, body, status, logger)


@kopf.on.delete(API_GROUP, API_VERSION, RESOURCE_ELASTICSEARCH)
async def cluster_delete(namespace: str, name: str, logger: logging.Logger, **_kwargs):
    await delete_elasticsearch(namespace, name, logger)


@kopf.timer(
    API_GROUP,
    API_VERSION,
    RESOURCE_ELASTICSEARCH,
    interval=config.HEALTH_CHECK_INTERVAL,
    idle=15,
)
async def ping_elasticsearch(
    namespace: str, name: str, logger: logging.Logger, **_kwargs
):
    await ping_elasticsearch_status(namespace, name, logger)
