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
from typing import Any, Dict, List, Optional

from kubernetes_asyncio.client import CoreV1Api, V1Pod

from elastic.operator.constants import NodeRole, RedundancyPolicy
from elastic.operator.nodes import ManagedNode
from elastic.operator.registry import NodeRegistry
from elastic.operator.status import StatusRecorder, is_pod_ready, role_pod_state_map
from elastic.operator.utils.k8s_api_client import GlobalApiClient
from elastic.operator.utils.kubeapi import list_cluster_pods


class ClusterRequest:
    """
    Everything a single reconciliation of an ``Elasticsearch`` resource works
    with.

    :param namespace: The namespace of the resource.
    :param name: The name of the resource.
    :param body: The resource as passed to the kopf handler.
    :param recorder: The status recorder of the resource.
    :param gateway: The :class:`~elastic.operator.gateway.ElasticsearchGateway`
        of the cluster.
    :param registry: The registry holding the managed nodes of the cluster.
    :param logger:
    """

    def __init__(
        self,
        namespace: str,
        name: str,
        body: Dict[str, Any],
        recorder: StatusRecorder,
        gateway,
        registry: NodeRegistry,
        logger: logging.Logger,
    ):
        self.namespace = namespace
        self.name = name
        self.spec: Dict[str, Any] = dict(body.get("spec") or {})
        self.uid: Optional[str] = (body.get("metadata") or {}).get("uid")
        self.recorder = recorder
        self.gateway = gateway
        self.registry = registry
        self.logger = logger

    @property
    def nodes(self) -> List[ManagedNode]:
        return self.registry.get(self.namespace, self.name)

    @property
    def node_specs(self) -> List[Dict[str, Any]]:
        return self.spec.get("nodes") or []

    @property
    def cluster_spec(self) -> Dict[str, Any]:
        return self.spec.get("nodeSpec") or {}

    @property
    def redundancy_policy(self) -> str:
        return self.spec.get("redundancyPolicy") or ""

    @property
    def status(self) -> Dict[str, Any]:
        return self.recorder.status

    def role_count(self, role: NodeRole) -> int:
        return sum(
            n.get("nodeCount", 0)
            for n in self.node_specs
            if role.value in (n.get("roles") or [])
        )

    def master_count(self) -> int:
        return self.role_count(NodeRole.MASTER)

    def data_count(self) -> int:
        return self.role_count(NodeRole.DATA)

    def find_node(self, name: str) -> Optional[ManagedNode]:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    async def pods(self) -> List[V1Pod]:
        async with GlobalApiClient() as api_client:
            core = CoreV1Api(api_client)
            return await list_cluster_pods(core, self.namespace, self.name)

    async def role_pod_state_map(self) -> Dict[str, Dict[str, List[str]]]:
        return role_pod_state_map(await self.pods())

    async def any_node_ready(self) -> bool:
        return any(is_pod_ready(p) for p in await self.pods())

    async def cluster_ready(self) -> bool:
        pods = await self.pods()
        return bool(pods) and all(is_pod_ready(p) for p in pods)


def desired_replica_count(policy: str, data_count: int) -> int:
    """
    Return the number of replicas every index should have for the given
    redundancy policy and number of data nodes.
    """
    if policy == RedundancyPolicy.FULL:
        return data_count - 1
    if policy == RedundancyPolicy.MULTIPLE:
        return (data_count - 1) // 2
    if policy == RedundancyPolicy.SINGLE:
        return 1
    if policy == RedundancyPolicy.ZERO:
        return 0
    return 0 if data_count == 1 else 1
