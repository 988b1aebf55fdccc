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

from typing import Any, Dict, Iterable, List, Mapping, Optional

from kubernetes_asyncio.client import ApiException, CustomObjectsApi

from elastic.operator.constants import (
    API_GROUP,
    API_VERSION,
    CLUSTER_HEALTH_UNKNOWN,
    DESIRED_CLUSTER_HEALTH,
    RESOURCE_ELASTICSEARCH,
    UUID_LENGTH,
    NodeRole,
)
from elastic.operator.exceptions import GatewayError
from elastic.operator.nodes import (
    ManagedNode,
    ReplicatedNode,
    ScalableNode,
    get_deployment,
    get_statefulset,
)
from elastic.operator.podtemplate import get_owner_references
from elastic.operator.request import ClusterRequest
from elastic.operator.status import node_status_name
from elastic.operator.utils import quorum, random_string
from elastic.operator.utils.k8s_api_client import GlobalApiClient
from elastic.operator.utils.kubeapi import (
    get_elasticsearch_resource,
    retry_on_conflict,
)

#: The order in which role letters appear in node names.
ROLE_SUFFIXES = (
    (NodeRole.CLIENT, "c"),
    (NodeRole.DATA, "d"),
    (NodeRole.MASTER, "m"),
)


def node_name_suffix(roles: Iterable[str]) -> str:
    roles = set(roles)
    return "".join(letter for role, letter in ROLE_SUFFIXES if role.value in roles)


def node_base_name(cluster_name: str, node_spec: Mapping[str, Any]) -> str:
    """
    Return ``<cluster>-<roles>-<uuid>``, e.g. ``es-cdm-1a2b3c4d``.
    """
    suffix = node_name_suffix(node_spec.get("roles") or [])
    return f"{cluster_name}-{suffix}-{node_spec['genUUID']}"


def build_nodes(request: ClusterRequest) -> List[ManagedNode]:
    """
    Build the desired managed nodes of a cluster.

    Every node spec with the data role becomes ``nodeCount`` Deployments with
    a 1-based index suffix. All other node specs become a single StatefulSet.
    """
    owner_references = get_owner_references(request.name, request.uid)
    nodes: List[ManagedNode] = []
    for node_spec in request.node_specs:
        roles = node_spec.get("roles") or []
        base_name = node_base_name(request.name, node_spec)
        if NodeRole.DATA.value in roles:
            for index in range(1, node_spec.get("nodeCount", 0) + 1):
                deployment = get_deployment(
                    request.namespace,
                    request.name,
                    f"{base_name}-{index}",
                    request.cluster_spec,
                    node_spec,
                    owner_references,
                )
                nodes.append(
                    ScalableNode(
                        request.namespace,
                        request.name,
                        deployment,
                        roles,
                        request.gateway,
                        request.logger,
                        storage=node_spec.get("storage"),
                    )
                )
        else:
            statefulset = get_statefulset(
                request.namespace,
                request.name,
                base_name,
                request.cluster_spec,
                node_spec,
                owner_references,
            )
            nodes.append(
                ReplicatedNode(
                    request.namespace,
                    request.name,
                    statefulset,
                    roles,
                    request.gateway,
                    request.logger,
                )
            )
    return nodes


async def set_uuids(request: ClusterRequest) -> None:
    """
    Assign a random ``genUUID`` to every node spec that does not have one yet
    and store it in the spec of the resource.
    """
    if all(n.get("genUUID") for n in request.node_specs):
        return

    async def attempt() -> Dict[str, Any]:
        body = await get_elasticsearch_resource(request.namespace, request.name)
        changed = False
        for node_spec in body.get("spec", {}).get("nodes") or []:
            if not node_spec.get("genUUID"):
                node_spec["genUUID"] = random_string(UUID_LENGTH)
                changed = True
        if not changed:
            return body
        async with GlobalApiClient() as api_client:
            coapi = CustomObjectsApi(api_client)
            return await coapi.replace_namespaced_custom_object(
                group=API_GROUP,
                version=API_VERSION,
                plural=RESOURCE_ELASTICSEARCH,
                namespace=request.namespace,
                name=request.name,
                body=body,
            )

    body = await retry_on_conflict(attempt, request.logger)
    request.spec = dict(body.get("spec") or {})
    request.logger.info("Assigned UUIDs to the nodes of cluster '%s'", request.name)


def validate_uuids(
    cluster_name: str,
    node_statuses: Iterable[Mapping[str, Any]],
    node_specs: Iterable[Mapping[str, Any]],
) -> Optional[str]:
    """
    Check that every UUID used by a node listed in the status is still one of
    the ``genUUID`` values of the spec.

    :return: A message describing the first problem found or ``None``.
    """
    prefix = f"{cluster_name}-"
    known: List[str] = []
    for node_status in node_statuses:
        full_name = node_status_name(node_status)  # type: ignore
        name = full_name[len(prefix) :] if full_name.startswith(prefix) else full_name
        parts = name.split("-")
        if len(parts) < 2:
            return f"Invalid name found for node '{full_name}'"
        if parts[1] not in known:
            known.append(parts[1])

    generated = {n.get("genUUID") for n in node_specs if n.get("genUUID")}
    for uuid in known:
        if uuid not in generated:
            return f"Previously used GenUUID '{uuid}' is no longer found in spec.nodes"
    return None


async def update_min_masters(request: ClusterRequest) -> None:
    """
    Set ``discovery.zen.minimum_master_nodes`` to a quorum of the requested
    master nodes once enough nodes joined the cluster.
    """
    if not await request.any_node_ready():
        return

    gateway = request.gateway
    desired = quorum(request.master_count())
    try:
        current = await gateway.get_min_master_nodes()
    except GatewayError as e:
        request.logger.info("Unable to get current min master count: %s", e)
        current = 0
    try:
        node_count = await gateway.get_cluster_node_count()
    except GatewayError as e:
        request.logger.error("Unable to get cluster node count: %s", e)
        node_count = 0

    if node_count >= desired and current != desired:
        try:
            await gateway.set_min_master_nodes(desired)
        except GatewayError as e:
            request.logger.info("Unable to set min master count to %d: %s", desired, e)


async def populate_nodes(request: ClusterRequest) -> None:
    """
    Converge the registered nodes of a cluster with its spec.

    Nodes that are still desired adopt their new desired state but keep their
    hash memory. Nodes that are no longer desired are deleted, but only while
    the cluster health is green or yellow.
    """
    await set_uuids(request)

    known = {node.name: node for node in request.nodes}
    desired = build_nodes(request)
    current: List[ManagedNode] = []
    for node in desired:
        existing = known.get(node.name)
        if existing is None:
            current.append(node)
        else:
            existing.update_reference(node)
            current.append(existing)

    desired_names = {node.name for node in desired}
    removals = [node for node in request.nodes if node.name not in desired_names]
    min_masters_updated = False
    for index, node in enumerate(removals):
        try:
            health = await request.gateway.get_cluster_health_status()
        except GatewayError as e:
            request.logger.info("Unable to read the cluster health: %s", e)
            health = CLUSTER_HEALTH_UNKNOWN
        if health not in DESIRED_CLUSTER_HEALTH:
            request.logger.info(
                "Waiting for cluster '%s' to be green or yellow before removing "
                "node '%s'. Current health is '%s'.",
                request.name,
                node.name,
                health,
            )
            # Keep the remaining nodes registered to retry their removal.
            current.extend(removals[index:])
            break

        if not min_masters_updated and await request.any_node_ready():
            await update_min_masters(request)
            min_masters_updated = True

        request.logger.info("Removing node '%s'", node.name)
        try:
            await node.delete()
        except ApiException as e:
            request.logger.error(
                "Unable to delete node '%s': %s", node.name, e.reason
            )
        await request.recorder.remove_node_status(node.name)

    request.registry.set(request.namespace, request.name, current)
