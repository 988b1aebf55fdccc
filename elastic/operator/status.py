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
import enum
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from kubernetes_asyncio.client import CustomObjectsApi, V1Pod

from elastic.operator.config import config
from elastic.operator.constants import (
    API_GROUP,
    API_VERSION,
    CLUSTER_HEALTH_UNKNOWN,
    ELASTICSEARCH_CONTAINER_NAME,
    LABEL_NODE_NAME,
    LABEL_ROLE_CLIENT,
    LABEL_ROLE_DATA,
    LABEL_ROLE_MASTER,
    RESOURCE_ELASTICSEARCH,
    ClusterConditionType,
    ConditionStatus,
    NodeRole,
    PodState,
    ShardAllocation,
)
from elastic.operator.exceptions import GatewayError
from elastic.operator.utils.k8s_api_client import GlobalApiClient
from elastic.operator.utils.kubeapi import (
    get_elasticsearch_resource,
    retry_on_conflict,
)
from elastic.operator.utils.typing import ClusterCondition, NodeStatus

ROLE_LABELS = {
    NodeRole.CLIENT: LABEL_ROLE_CLIENT,
    NodeRole.DATA: LABEL_ROLE_DATA,
    NodeRole.MASTER: LABEL_ROLE_MASTER,
}


def _plain(value: str) -> str:
    return value.value if isinstance(value, enum.Enum) else value


def now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def get_condition(
    conditions: Iterable[ClusterCondition], type: str
) -> Tuple[int, Optional[ClusterCondition]]:
    for index, condition in enumerate(conditions):
        if condition.get("type") == type:
            return index, condition
    return -1, None


def update_condition(
    conditions: List[ClusterCondition],
    type: str,
    value: str,
    reason: str = "",
    message: str = "",
) -> bool:
    """
    Add, update or remove the condition ``type`` in ``conditions`` in place.

    A ``False`` value removes the condition. Any other value adds the
    condition or replaces the existing one. When the status of an existing
    condition does not change, its ``lastTransitionTime`` is kept.

    :return: ``True`` if ``conditions`` was modified.
    """
    index, old = get_condition(conditions, type)
    if value == ConditionStatus.FALSE:
        if old is None:
            return False
        del conditions[index]
        return True

    new: ClusterCondition = {
        "type": _plain(type),
        "status": _plain(value),
        "reason": reason,
        "message": message,
        "lastTransitionTime": now(),
    }
    if old is None:
        conditions.append(new)
        return True

    if old.get("status") == new["status"]:
        new["lastTransitionTime"] = old.get(
            "lastTransitionTime", new["lastTransitionTime"]
        )
    changed = any(
        old.get(key) != new[key]  # type: ignore
        for key in ("status", "reason", "message", "lastTransitionTime")
    )
    conditions[index] = new
    return changed


def contains_condition(
    conditions: Iterable[ClusterCondition], type: str, value: str
) -> bool:
    """
    Check if the condition ``type`` has the status ``value``. An absent
    condition is treated as ``False``.
    """
    _, condition = get_condition(conditions, type)
    if condition is None:
        return value == ConditionStatus.FALSE
    return condition.get("status") == value


def node_status_name(node_status: NodeStatus) -> str:
    return (
        node_status.get("deploymentName") or node_status.get("statefulSetName") or ""
    )


def get_node_status(status: dict, name: str) -> Tuple[int, Optional[NodeStatus]]:
    """
    Find the entry in ``status.nodes`` that belongs to the workload ``name``.
    """
    for index, node_status in enumerate(status.get("nodes") or []):
        if name in (
            node_status.get("deploymentName"),
            node_status.get("statefulSetName"),
        ):
            return index, node_status
    return -1, None


def is_pod_ready(pod: V1Pod) -> bool:
    statuses = (pod.status.container_statuses if pod.status else None) or []
    return bool(statuses) and all(c.ready for c in statuses)


def pod_state_map(pods: Iterable[V1Pod]) -> Dict[str, List[str]]:
    state_map: Dict[str, List[str]] = {state.value: [] for state in PodState}
    for pod in pods:
        phase = pod.status.phase if pod.status else None
        if phase == "Pending":
            state_map[PodState.NOT_READY.value].append(pod.metadata.name)
        elif phase == "Running":
            state = PodState.READY if is_pod_ready(pod) else PodState.NOT_READY
            state_map[state.value].append(pod.metadata.name)
        elif phase == "Failed":
            state_map[PodState.FAILED.value].append(pod.metadata.name)
    return state_map


def role_pod_state_map(pods: List[V1Pod]) -> Dict[str, Dict[str, List[str]]]:
    """
    Group the pods of a cluster by role and by their state.
    """
    return {
        role.value: pod_state_map(
            p for p in pods if (p.metadata.labels or {}).get(label) == "true"
        )
        for role, label in ROLE_LABELS.items()
    }


def update_pod_node_conditions(node_status: NodeStatus, pods: List[V1Pod]) -> None:
    """
    Reflect scheduling problems and waiting or terminated Elasticsearch
    containers of the given pods in the conditions of ``node_status``.
    """
    conditions = node_status.setdefault("conditions", [])
    for pod in pods:
        unschedulable = False
        for pod_condition in pod.status.conditions or []:
            if pod_condition.type == "PodScheduled" and pod_condition.status == "False":
                update_condition(
                    conditions,
                    ClusterConditionType.UNSCHEDULABLE,
                    ConditionStatus.TRUE,
                    pod_condition.reason or "",
                    pod_condition.message or "",
                )
                unschedulable = True
        if unschedulable:
            continue
        update_condition(
            conditions, ClusterConditionType.UNSCHEDULABLE, ConditionStatus.FALSE
        )

        for container in pod.status.container_statuses or []:
            if container.name != ELASTICSEARCH_CONTAINER_NAME:
                continue
            for type, state in (
                (ClusterConditionType.CONTAINER_WAITING, container.state.waiting),
                (ClusterConditionType.CONTAINER_TERMINATED, container.state.terminated),
            ):
                reason = (state.reason or "") if state else ""
                message = (state.message or "") if state else ""
                value = (
                    ConditionStatus.TRUE if reason or message else ConditionStatus.FALSE
                )
                update_condition(conditions, type, value, reason, message)


class StatusRecorder:
    """
    Keeps a copy of the ``status`` of an ``Elasticsearch`` resource and
    persists changes to it.

    Every change is applied to a freshly read copy of the resource and written
    with ``replace_namespaced_custom_object_status``. Conflicting writes are
    retried.
    """

    def __init__(
        self,
        namespace: str,
        name: str,
        logger: logging.Logger,
        status: Optional[dict] = None,
    ):
        self.namespace = namespace
        self.name = name
        self.logger = logger
        self.status: dict = copy.deepcopy(dict(status or {}))

    async def _fetch(self) -> dict:
        return await get_elasticsearch_resource(self.namespace, self.name)

    async def _store(self, body: dict) -> dict:
        async with GlobalApiClient() as api_client:
            coapi = CustomObjectsApi(api_client)
            return await coapi.replace_namespaced_custom_object_status(
                group=API_GROUP,
                version=API_VERSION,
                plural=RESOURCE_ELASTICSEARCH,
                namespace=self.namespace,
                name=self.name,
                body=body,
            )

    async def refresh(self) -> dict:
        body = await self._fetch()
        self.status = copy.deepcopy(body.get("status") or {})
        return self.status

    async def persist(self, mutate: Callable[[dict], None]) -> None:
        """
        Apply ``mutate`` to the status of the live resource and store it if
        that changed anything. The local status is replaced by the result.

        :param mutate: A function modifying the status dict in place. It may
            be called more than once.
        """

        async def attempt():
            body = await self._fetch()
            status = body.setdefault("status", {})
            current = copy.deepcopy(status)
            mutate(status)
            if status == current:
                return body
            return await self._store(body) or body

        stored = await retry_on_conflict(
            attempt, self.logger, retries=config.STATUS_UPDATE_RETRIES
        )
        self.status = copy.deepcopy(stored.get("status") or {})

    def contains_condition(self, type: str, value: str) -> bool:
        return contains_condition(self.status.get("conditions") or [], type, value)

    async def update_conditions(self, *updates: Tuple[str, str, str, str]) -> None:
        """
        Persist several condition changes at once.

        :param updates: Tuples of ``(type, value, reason, message)``.
        """

        def mutate(status: dict) -> None:
            conditions = status.setdefault("conditions", [])
            for type, value, reason, message in updates:
                update_condition(conditions, type, value, reason, message)

        await self.persist(mutate)

    async def update_condition(
        self, type: str, value: str, reason: str = "", message: str = ""
    ) -> None:
        await self.update_conditions((type, value, reason, message))

    def node_status(self, name: str) -> Optional[NodeStatus]:
        _, node_status = get_node_status(self.status, name)
        return copy.deepcopy(node_status) if node_status is not None else None

    async def set_node_status(self, name: str, node_status: NodeStatus) -> None:
        """
        Insert or replace the entry for the workload ``name`` in
        ``status.nodes``.
        """

        def mutate(status: dict) -> None:
            nodes = status.setdefault("nodes", [])
            index, _ = get_node_status(status, name)
            if index < 0:
                nodes.append(copy.deepcopy(node_status))
            else:
                nodes[index] = copy.deepcopy(node_status)

        await self.persist(mutate)

    async def remove_node_status(self, name: str) -> None:
        def mutate(status: dict) -> None:
            status["nodes"] = [
                n for n in status.get("nodes") or [] if node_status_name(n) != name
            ]

        await self.persist(mutate)


async def update_cluster_status(
    recorder: StatusRecorder,
    gateway,
    nodes,
    pods: List[V1Pod],
    logger: logging.Logger,
) -> None:
    """
    Refresh the cluster health, shard allocation mode, pod states and node
    conditions in the status of the resource.

    The Elasticsearch API is only queried when at least one pod is ready.
    Entries in ``status.nodes`` whose workload no longer exists are removed.

    :param recorder: The status recorder of the cluster.
    :param gateway: The :class:`~elastic.operator.gateway.ElasticsearchGateway`
        of the cluster.
    :param nodes: The list of managed nodes of the cluster.
    :param pods: All Elasticsearch pods of the cluster.
    """
    health: dict = {"status": CLUSTER_HEALTH_UNKNOWN}
    allocation = ShardAllocation.UNKNOWN
    if any(is_pod_ready(p) and p.status.phase == "Running" for p in pods):
        try:
            health = await gateway.get_cluster_health()
        except GatewayError as e:
            logger.info("Unable to read the cluster health: %s", e)
        try:
            mode = await gateway.get_shard_allocation()
        except GatewayError as e:
            logger.info("Unable to read the shard allocation mode: %s", e)
        else:
            try:
                allocation = ShardAllocation(mode)
            except ValueError:
                allocation = ShardAllocation.UNKNOWN

    existing = set()
    for node in nodes:
        if not await node.is_missing():
            existing.add(node.name)

    pods_by_node: Dict[str, List[V1Pod]] = {}
    for pod in pods:
        node_name = (pod.metadata.labels or {}).get(LABEL_NODE_NAME)
        if node_name:
            pods_by_node.setdefault(node_name, []).append(pod)

    def mutate(status: dict) -> None:
        status["cluster"] = health
        status["shardAllocationEnabled"] = allocation.value
        status["pods"] = role_pod_state_map(pods)
        status.setdefault("conditions", [])
        kept = []
        for node_status in status.get("nodes") or []:
            name = node_status_name(node_status)
            if name not in existing:
                logger.info("Pruning status of missing node '%s'", name)
                continue
            update_pod_node_conditions(node_status, pods_by_node.get(name, []))
            kept.append(node_status)
        status["nodes"] = kept

    await recorder.persist(mutate)
