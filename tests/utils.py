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

import copy
import logging
from typing import Any, Dict, Iterable, List, Optional

from kubernetes_asyncio.client import (
    ApiException,
    V1ContainerState,
    V1ContainerStateWaiting,
    V1ContainerStatus,
    V1Deployment,
    V1DeploymentSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1Pod,
    V1PodCondition,
    V1PodStatus,
    V1PodTemplateSpec,
)

from elastic.operator.constants import (
    COMPONENT_ELASTICSEARCH,
    ELASTICSEARCH_CONTAINER_NAME,
    LABEL_CLUSTER_NAME,
    LABEL_COMPONENT,
    LABEL_NODE_NAME,
    LABEL_ROLE_CLIENT,
    LABEL_ROLE_DATA,
    LABEL_ROLE_MASTER,
)
from elastic.operator.nodes import ManagedNode
from elastic.operator.registry import NodeRegistry
from elastic.operator.request import ClusterRequest
from elastic.operator.status import StatusRecorder

logger = logging.getLogger(__name__)

NAMESPACE = "logging"
CLUSTER_NAME = "elasticsearch"


class MemoryStatusRecorder(StatusRecorder):
    """
    A status recorder which keeps the resource in memory.

    :param conflicts: The number of writes rejected with HTTP 409 before the
        first one succeeds.
    """

    def __init__(self, status: Optional[dict] = None, *, conflicts: int = 0):
        super().__init__(NAMESPACE, CLUSTER_NAME, logger, status)
        self.body: Dict[str, Any] = {"status": copy.deepcopy(self.status)}
        self.conflicts = conflicts
        self.stores = 0

    async def _fetch(self) -> dict:
        return copy.deepcopy(self.body)

    async def _store(self, body: dict) -> dict:
        if self.conflicts > 0:
            self.conflicts -= 1
            raise ApiException(status=409, reason="Conflict")
        self.stores += 1
        self.body = copy.deepcopy(body)
        return copy.deepcopy(body)


class FakeGateway:
    """
    Stands in for an ``ElasticsearchGateway`` and records every modifying
    call in :attr:`calls`.
    """

    def __init__(
        self,
        *,
        health: str = "green",
        node_count: int = 3,
        versions: Iterable[str] = ("6.8.23",),
        lowest_replica: Optional[int] = None,
        min_master_nodes: int = 0,
        acknowledge: bool = True,
        flushed: bool = True,
    ):
        self.health = health
        self.node_count = node_count
        self.versions = list(versions)
        self.lowest_replica = lowest_replica
        self.min_master_nodes = min_master_nodes
        self.acknowledge = acknowledge
        self.flushed = flushed
        self.members: set = set()
        self.disk_usage: Dict[str, tuple] = {}
        self.threshold_enabled = True
        self.watermarks: tuple = (85.0, 90.0, 95.0)
        self.indices: List[Dict[str, Any]] = []
        self.index_settings: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []

    async def get_cluster_health(self) -> dict:
        return {"status": self.health, "numNodes": self.node_count}

    async def get_cluster_health_status(self) -> str:
        return self.health

    async def get_cluster_node_count(self) -> int:
        return self.node_count

    async def get_shard_allocation(self) -> str:
        return "all"

    async def set_shard_allocation(self, mode: str) -> bool:
        self.calls.append(("set_shard_allocation", mode))
        return self.acknowledge

    async def clear_transient_shard_allocation(self) -> bool:
        self.calls.append(("clear_transient_shard_allocation",))
        return self.acknowledge

    async def do_synchronized_flush(self) -> bool:
        self.calls.append(("do_synchronized_flush",))
        return self.flushed

    async def get_min_master_nodes(self) -> int:
        return self.min_master_nodes

    async def set_min_master_nodes(self, count: int) -> bool:
        self.calls.append(("set_min_master_nodes", count))
        self.min_master_nodes = count
        return self.acknowledge

    async def is_node_in_cluster(self, name: str) -> bool:
        return name in self.members

    async def get_lowest_cluster_version(self) -> Optional[str]:
        return min(self.versions) if self.versions else None

    async def get_lowest_replica_value(self) -> Optional[int]:
        return self.lowest_replica

    async def update_replica_count(self, replicas: int) -> None:
        self.calls.append(("update_replica_count", replicas))

    async def get_threshold_enabled(self) -> bool:
        return self.threshold_enabled

    async def get_disk_watermarks(self) -> tuple:
        return self.watermarks

    async def get_node_disk_usage(self, name: str) -> tuple:
        return self.disk_usage.get(name, ("", -1.0))

    async def list_all_indices(self, pattern: str = "") -> List[Dict[str, Any]]:
        return self.indices

    async def get_index_settings(self, name: str) -> Dict[str, Any]:
        return self.index_settings.get(name, {})

    async def update_index_settings(self, name: str, settings: dict) -> bool:
        self.calls.append(("update_index_settings", name, settings))
        return self.acknowledge


class FakeNode(ManagedNode):
    """
    A managed node without a Kubernetes workload behind it. Every operation
    is recorded in :attr:`calls`.
    """

    status_key = "deploymentName"

    def __init__(
        self,
        name: str,
        *,
        roles: Iterable[str] = ("data",),
        replicas: int = 1,
        gateway=None,
        exists: bool = True,
        changed: bool = False,
    ):
        workload = V1Deployment(
            metadata=V1ObjectMeta(name=name, namespace=NAMESPACE),
            spec=V1DeploymentSpec(
                replicas=replicas,
                selector=V1LabelSelector(match_labels={LABEL_NODE_NAME: name}),
                template=V1PodTemplateSpec(),
            ),
        )
        super().__init__(NAMESPACE, CLUSTER_NAME, workload, roles, gateway, logger)
        self.exists = exists
        self.changed = changed
        self.calls: List[str] = []

    async def _read_workload(self, apps):
        return self.workload

    async def _create_workload(self, apps):
        return self.workload

    async def _replace_workload(self, apps, body):
        return body

    def _delete_api(self, apps):
        raise NotImplementedError

    async def create(self) -> None:
        self.calls.append("create")
        self.exists = True

    async def delete(self) -> None:
        self.calls.append("delete")
        self.exists = False

    async def is_missing(self) -> bool:
        return not self.exists

    async def state(self):
        return {
            self.status_key: self.name,
            "upgradeStatus": {
                "scheduledUpgrade": "True" if self.changed else "",
                "scheduledRedeploy": "",
            },
        }

    async def progress_node_changes(self) -> None:
        self.calls.append("progress_node_changes")
        self.changed = False

    async def scale_down(self) -> None:
        self.calls.append("scale_down")

    async def scale_up(self) -> None:
        self.calls.append("scale_up")

    async def refresh_hashes(self) -> None:
        self.calls.append("refresh_hashes")

    async def wait_for_node_rejoin_cluster(self) -> None:
        self.calls.append("wait_for_node_rejoin_cluster")

    async def wait_for_node_leave_cluster(self) -> None:
        self.calls.append("wait_for_node_leave_cluster")

    async def _is_member(self) -> bool:
        return True

    async def _has_left(self) -> bool:
        return True


class FakeClusterRequest(ClusterRequest):
    """
    A cluster request whose pods are given instead of listed from
    Kubernetes.
    """

    def __init__(
        self,
        spec: Optional[dict] = None,
        *,
        status: Optional[dict] = None,
        gateway=None,
        nodes: Optional[List[ManagedNode]] = None,
        pods: Optional[List[V1Pod]] = None,
        registry: Optional[NodeRegistry] = None,
    ):
        registry = registry or NodeRegistry()
        if nodes is not None:
            registry.set(NAMESPACE, CLUSTER_NAME, nodes)
        super().__init__(
            NAMESPACE,
            CLUSTER_NAME,
            {"metadata": {"uid": "1234-abcd"}, "spec": spec or {}},
            MemoryStatusRecorder(status),
            gateway if gateway is not None else FakeGateway(),
            registry,
            logger,
        )
        self.pod_list: List[V1Pod] = list(pods or [])

    async def pods(self) -> List[V1Pod]:
        return list(self.pod_list)


def make_pod(
    name: str,
    *,
    phase: str = "Running",
    ready: bool = True,
    node_name: Optional[str] = None,
    roles: Iterable[str] = ("client", "data", "master"),
    waiting_reason: Optional[str] = None,
    unschedulable: bool = False,
) -> V1Pod:
    roles = set(roles)
    labels = {
        LABEL_COMPONENT: COMPONENT_ELASTICSEARCH,
        LABEL_CLUSTER_NAME: CLUSTER_NAME,
        LABEL_NODE_NAME: node_name or name,
        LABEL_ROLE_CLIENT: str("client" in roles).lower(),
        LABEL_ROLE_DATA: str("data" in roles).lower(),
        LABEL_ROLE_MASTER: str("master" in roles).lower(),
    }
    conditions = []
    if unschedulable:
        conditions.append(
            V1PodCondition(
                type="PodScheduled",
                status="False",
                reason="Unschedulable",
                message="0/3 nodes are available",
            )
        )
    waiting = (
        V1ContainerStateWaiting(reason=waiting_reason, message="Back-off")
        if waiting_reason
        else None
    )
    return V1Pod(
        metadata=V1ObjectMeta(name=name, namespace=NAMESPACE, labels=labels),
        status=V1PodStatus(
            phase=phase,
            conditions=conditions,
            container_statuses=[
                V1ContainerStatus(
                    name=ELASTICSEARCH_CONTAINER_NAME,
                    image="elasticsearch:6.8",
                    image_id="",
                    ready=ready,
                    restart_count=0,
                    state=V1ContainerState(waiting=waiting),
                )
            ],
        ),
    )
