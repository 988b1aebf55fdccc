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
from typing import Any, Mapping

import kopf

from elastic.operator.cluster import create_or_update_cluster
from elastic.operator.config import config
from elastic.operator.constants import (
    MANAGEMENT_STATE_UNMANAGED,
    ClusterConditionType,
    ConditionStatus,
)
from elastic.operator.exceptions import OperatorError
from elastic.operator.gateway import get_gateway
from elastic.operator.registry import NodeRegistry, registry
from elastic.operator.request import ClusterRequest
from elastic.operator.status import StatusRecorder


async def reconcile_elasticsearch(
    namespace: str,
    name: str,
    body: Mapping[str, Any],
    status: Mapping[str, Any],
    logger: logging.Logger,
    node_registry: NodeRegistry = registry,
) -> None:
    """
    Reconcile an ``Elasticsearch`` resource while holding the lock of the
    cluster.

    Errors raised by the operator turn into :exc:`kopf.TemporaryError`, so
    the reconciliation is retried after
    :attr:`~elastic.operator.config.Config.TEMPORARY_ERROR_DELAY` seconds.
    """
    spec = body.get("spec") or {}
    if spec.get("managementState") == MANAGEMENT_STATE_UNMANAGED:
        logger.info("Cluster '%s' is unmanaged. Skipping reconciliation.", name)
        return

    async with node_registry.lock(namespace, name):
        recorder = StatusRecorder(namespace, name, logger, dict(status or {}))
        try:
            gateway = await get_gateway(namespace, name, logger)
            try:
                request = ClusterRequest(
                    namespace,
                    name,
                    dict(body),
                    recorder,
                    gateway,
                    node_registry,
                    logger,
                )
                await create_or_update_cluster(request)
            finally:
                await gateway.close()
        except OperatorError as e:
            raise kopf.TemporaryError(
                f"Reconciling cluster '{name}' failed: {e}",
                delay=config.TEMPORARY_ERROR_DELAY,
            ) from e

        await recorder.update_condition(
            ClusterConditionType.DEGRADED, ConditionStatus.FALSE
        )
