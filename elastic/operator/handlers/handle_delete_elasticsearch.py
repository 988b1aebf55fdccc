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

from elastic.operator.prometheus import forget_cluster
from elastic.operator.registry import NodeRegistry, registry


async def delete_elasticsearch(
    namespace: str,
    name: str,
    logger: logging.Logger,
    node_registry: NodeRegistry = registry,
) -> None:
    """
    Forget everything the operator remembers about a deleted cluster.

    The workloads themselves are garbage collected by Kubernetes through
    their owner references.
    """
    async with node_registry.lock(namespace, name):
        node_registry.forget(namespace, name)
    forget_cluster(namespace, name)
    logger.info("Removed cluster '%s' from the node registry", name)
