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

from elastic.operator.exceptions import OperatorError
from elastic.operator.gateway import get_gateway
from elastic.operator.prometheus import (
    PrometheusClusterStatus,
    report_cluster_status,
    status_for_health,
)


async def ping_elasticsearch_status(
    namespace: str,
    name: str,
    logger: logging.Logger,
) -> PrometheusClusterStatus:
    try:
        gateway = await get_gateway(namespace, name, logger)
        async with gateway:
            health = await gateway.get_cluster_health_status()
        status = status_for_health(health)
    except OperatorError as e:
        logger.warning("Unable to check the health of cluster '%s': %s", name, e)
        status = PrometheusClusterStatus.UNREACHABLE

    report_cluster_status(namespace, name, status)
    return status
