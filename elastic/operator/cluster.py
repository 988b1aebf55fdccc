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

from typing import List, Optional

from elastic.operator.constants import (
    MIN_ROLLING_UPDATE_VERSION,
    ClusterConditionType,
    ConditionStatus,
    ShardAllocation,
)
from elastic.operator.exceptions import GatewayError, OperatorError
from elastic.operator.nodes import ManagedNode, ReplicatedNode
from elastic.operator.prometheus import report_restart
from elastic.operator.request import ClusterRequest, desired_replica_count
from elastic.operator.restart import (
    CampaignKind,
    perform,
    perform_rolling_update,
)
from elastic.operator.status import (
    contains_condition,
    get_condition,
    node_status_name,
    update_cluster_status,
)
from elastic.operator.topology import populate_nodes, update_min_masters
from elastic.operator.utils.version import ElasticsearchVersion
from elastic.operator.validation import validate_configuration
from elastic.operator.watermarks import check_watermark_and_unblock_indices

#: Reasons of a waiting container after which its node is rolled out again.
STUCK_CONTAINER_REASONS = ("ImagePullBackOff", "CrashLoopBackOff")


async def refresh_cluster_status(request: ClusterRequest) -> None:
    await update_cluster_status(
        request.recorder,
        request.gateway,
        request.nodes,
        await request.pods(),
        request.logger,
    )


def _nodes_with_flag(request: ClusterRequest, flag: str) -> List[ManagedNode]:
    nodes = []
    for node_status in request.status.get("nodes") or []:
        upgrade_status = node_status.get("upgradeStatus") or {}
        if upgrade_status.get(flag) != ConditionStatus.TRUE:
            continue
        node = request.find_node(node_status_name(node_status))
        if node is not None:
            nodes.append(node)
    return nodes


def node_upgrade_in_progress(request: ClusterRequest) -> Optional[ManagedNode]:
    nodes = _nodes_with_flag(request, "underUpgrade")
    return nodes[0] if nodes else None


def scheduled_upgrade_nodes(request: ClusterRequest) -> List[ManagedNode]:
    return _nodes_with_flag(request, "scheduledUpgrade")


def scheduled_cert_redeploy_nodes(request: ClusterRequest) -> List[ManagedNode]:
    """
    Return the nodes which need a restart to pick up new certificates. The
    StatefulSet nodes come first, so master nodes restart before data nodes.
    """
    nodes = _nodes_with_flag(request, "scheduledRedeploy")
    return [n for n in nodes if isinstance(n, ReplicatedNode)] + [
        n for n in nodes if not isinstance(n, ReplicatedNode)
    ]


def is_node_stuck(node_status: dict) -> bool:
    conditions = node_status.get("conditions") or []
    if contains_condition(
        conditions, ClusterConditionType.UNSCHEDULABLE, ConditionStatus.TRUE
    ):
        return True
    _, waiting = get_condition(conditions, ClusterConditionType.CONTAINER_WAITING)
    return bool(
        waiting
        and waiting.get("status") == ConditionStatus.TRUE
        and waiting.get("reason") in STUCK_CONTAINER_REASONS
    )


async def progress_unschedulable_nodes(request: ClusterRequest) -> None:
    """
    Push the desired pod template to nodes whose pods cannot be scheduled or
    whose container cannot start. A newer template might fix the problem and
    no restart campaign can complete while these pods are stuck.
    """
    for node_status in request.status.get("nodes") or []:
        if not is_node_stuck(node_status):
            continue
        node = request.find_node(node_status_name(node_status))
        if node is None:
            continue
        if await node.is_missing():
            request.logger.info(
                "Unschedulable node '%s' does not have a workload, skipping",
                node.name,
            )
            continue
        await node.progress_node_changes()


async def try_ensure_no_transient_shard_allocations(request: ClusterRequest) -> None:
    if not await request.any_node_ready():
        return
    try:
        if not await request.gateway.clear_transient_shard_allocation():
            request.logger.info("Unable to clear the transient shard allocation")
    except GatewayError as e:
        request.logger.info("Unable to clear the transient shard allocation: %s", e)


async def try_ensure_all_shard_allocation(request: ClusterRequest) -> None:
    if not await request.any_node_ready():
        return
    try:
        if not await request.gateway.set_shard_allocation(ShardAllocation.ALL.value):
            request.logger.error("Unable to enable shard allocation")
    except GatewayError as e:
        request.logger.error("Unable to enable shard allocation: %s", e)


async def update_replicas(request: ClusterRequest) -> None:
    if not await request.cluster_ready():
        return
    replicas = desired_replica_count(request.redundancy_policy, request.data_count())
    try:
        await request.gateway.update_replica_count(replicas)
    except GatewayError as e:
        request.logger.error("Unable to update replica count: %s", e)


async def ensure_nodes(request: ClusterRequest) -> None:
    """
    Create missing nodes and record whether a node needs an upgrade or a
    certificate restart.
    """
    recorder = request.recorder
    for node in request.nodes:
        await node.create()
        state = await node.state()
        node_status = recorder.node_status(node.name) or {}
        node_status[node.status_key] = node.name  # type: ignore
        upgrade_status = node_status.setdefault("upgradeStatus", {})
        upgrade_status.update(state["upgradeStatus"])
        node_status["roles"] = list(node.roles)
        await recorder.set_node_status(node.name, node_status)


async def run_campaign(
    request: ClusterRequest, kind: CampaignKind, nodes: List[ManagedNode]
) -> None:
    try:
        await perform(kind, request, nodes)
    except OperatorError:
        await refresh_cluster_status(request)
        raise
    report_restart(kind.value)
    await refresh_cluster_status(request)


async def _update_scheduled_nodes(
    request: ClusterRequest, scheduled: List[ManagedNode]
) -> None:
    version = await request.gateway.get_lowest_cluster_version()
    if version is None:
        raise OperatorError("Unable to determine the lowest cluster version")

    if ElasticsearchVersion(version) < ElasticsearchVersion(MIN_ROLLING_UPDATE_VERSION):
        await run_campaign(request, CampaignKind.FULL_CLUSTER_UPDATE, scheduled)
        return

    try:
        await perform_rolling_update(request, scheduled)
    except OperatorError:
        await refresh_cluster_status(request)
        raise
    report_restart(CampaignKind.NODE_UPDATE.value)
    await refresh_cluster_status(request)


async def create_or_update_cluster(request: ClusterRequest) -> None:
    """
    Reconcile an ``Elasticsearch`` resource with the live cluster.

    At most one restart campaign makes progress per call: a pending
    certificate restart first, then a node that is already being upgraded or
    restarted, then nodes scheduled for an upgrade. Only when no node is
    under upgrade, missing nodes are created and the cluster settings are
    converged.

    :raises InvalidSpecError: When the spec of the resource is invalid.
    :raises OperatorError: When a restart campaign could not complete a
        phase. The same phase is retried on the next call.
    """
    logger = request.logger
    recorder = request.recorder

    await validate_configuration(request)
    await populate_nodes(request)
    await try_ensure_no_transient_shard_allocations(request)

    # Refresh status.nodes so that deleted nodes are gone.
    await refresh_cluster_status(request)

    try:
        await progress_unschedulable_nodes(request)
    except OperatorError as e:
        logger.error("Unable to progress unschedulable nodes: %s", e)
        await refresh_cluster_status(request)
        raise

    cert_nodes = scheduled_cert_redeploy_nodes(request)
    if cert_nodes or recorder.contains_condition(
        ClusterConditionType.RECOVERING, ConditionStatus.TRUE
    ):
        await run_campaign(request, CampaignKind.FULL_CLUSTER_CERT_RESTART, cert_nodes)

    in_progress = node_upgrade_in_progress(request)
    scheduled = scheduled_upgrade_nodes(request)
    if in_progress is not None:
        if in_progress in scheduled:
            await run_campaign(request, CampaignKind.NODE_UPDATE, [in_progress])
            scheduled = scheduled_upgrade_nodes(request)
        else:
            await run_campaign(request, CampaignKind.NODE_RESTART, [in_progress])

    if scheduled:
        await _update_scheduled_nodes(request, scheduled)

    if node_upgrade_in_progress(request) is None:
        await ensure_nodes(request)
        await update_min_masters(request)
        await try_ensure_all_shard_allocation(request)
        await update_replicas(request)
        if await request.cluster_ready():
            await check_watermark_and_unblock_indices(
                request.gateway, [n.name for n in request.nodes], logger
            )

    await refresh_cluster_status(request)
