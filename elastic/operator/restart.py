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

"""
Resumable restart campaigns.

A campaign consists of five phases, each guarded by the persisted state of
the cluster (for campaigns over the whole cluster) or of a single node (for
campaigns over one node). A phase runs its action when its guard holds and
then signals the transition to the next phase, which is persisted right
away. Since every phase is guarded by persisted state only, a campaign that
failed or timed out continues with the same phase on the next
reconciliation.
"""

import abc
import copy
import enum
import logging
from typing import Awaitable, Callable, Dict, List, Tuple

from elastic.operator.constants import (
    DESIRED_CLUSTER_HEALTH,
    ClusterConditionType,
    ConditionStatus,
    ShardAllocation,
    UpgradePhase,
)
from elastic.operator.exceptions import (
    FlushShardsFailed,
    GatewayError,
    OperatorError,
)
from elastic.operator.nodes import ManagedNode
from elastic.operator.request import ClusterRequest
from elastic.operator.utils.typing import NodeStatus

Action = Callable[[], Awaitable[None]]

T = ConditionStatus.TRUE
F = ConditionStatus.FALSE


class Phase(enum.Enum):
    PRECHECK = "precheck"
    PREP = "prep"
    MAIN = "main"
    POST = "post"
    RECOVERY = "recovery"


class CampaignKind(str, enum.Enum):
    FULL_CLUSTER_UPDATE = "FullClusterUpdate"
    FULL_CLUSTER_CERT_RESTART = "FullClusterCertRestart"
    FULL_CLUSTER_RESTART = "FullClusterRestart"
    NODE_UPDATE = "NodeUpdate"
    NODE_RESTART = "NodeRestart"


#: The values of the ``Restarting``, ``UpdatingESSettings`` and ``Recovering``
#: conditions under which a phase of a cluster campaign runs.
CLUSTER_GUARDS: Dict[Phase, Tuple[ConditionStatus, ...]] = {
    Phase.PRECHECK: (F, F, F),
    Phase.PREP: (F, T, F),
    Phase.MAIN: (T, F, F),
    Phase.POST: (T, T, F),
    Phase.RECOVERY: (F, F, T),
}

GUARDED_CONDITIONS = (
    ClusterConditionType.RESTARTING,
    ClusterConditionType.UPDATING_ES_SETTINGS,
    ClusterConditionType.RECOVERING,
)


class Scope(abc.ABC):
    """
    Where the progress of a campaign is persisted.
    """

    @abc.abstractmethod
    def holds(self, phase: Phase) -> bool:
        """
        Check the guard of ``phase``.
        """

    @abc.abstractmethod
    async def signal(self, phase: Phase) -> None:
        """
        Persist the transition after ``phase`` completed.
        """


class ClusterScope(Scope):
    """
    Tracks a campaign over the whole cluster in the cluster conditions.
    """

    def __init__(self, request: ClusterRequest, nodes: List[ManagedNode]):
        self.request = request
        self.nodes = nodes

    def holds(self, phase: Phase) -> bool:
        recorder = self.request.recorder
        return all(
            recorder.contains_condition(type, value)
            for type, value in zip(GUARDED_CONDITIONS, CLUSTER_GUARDS[phase])
        )

    async def signal(self, phase: Phase) -> None:
        request = self.request
        recorder = request.recorder
        if phase is Phase.PRECHECK:
            request.logger.info("Beginning restart of cluster '%s'", request.name)
            await recorder.update_condition(
                ClusterConditionType.UPDATING_ES_SETTINGS, T
            )
        elif phase is Phase.PREP:
            await recorder.update_conditions(
                (ClusterConditionType.RESTARTING, T, "", ""),
                (ClusterConditionType.UPDATING_ES_SETTINGS, F, "", ""),
            )
        elif phase is Phase.MAIN:
            await recorder.update_condition(
                ClusterConditionType.UPDATING_ES_SETTINGS, T
            )
        elif phase is Phase.POST:
            # The restart picked up the new certificates.
            for node in self.nodes:
                node_status = recorder.node_status(node.name) or {
                    node.status_key: node.name  # type: ignore
                }
                upgrade_status = node_status.setdefault("upgradeStatus", {})
                upgrade_status["scheduledRedeploy"] = F.value
                await recorder.set_node_status(node.name, node_status)
            await recorder.update_conditions(
                (ClusterConditionType.UPDATING_ES_SETTINGS, F, "", ""),
                (ClusterConditionType.RECOVERING, T, "", ""),
                (ClusterConditionType.RESTARTING, F, "", ""),
            )
        elif phase is Phase.RECOVERY:
            request.logger.info("Completed restart of cluster '%s'", request.name)
            await recorder.update_conditions(
                (ClusterConditionType.RESTARTING, F, "", ""),
                (ClusterConditionType.RECOVERING, F, "", ""),
            )


class NodeScope(Scope):
    """
    Tracks a campaign over a single node in the node's ``upgradeStatus``.
    """

    def __init__(self, request: ClusterRequest, node: ManagedNode):
        self.request = request
        self.node = node
        self.node_status: NodeStatus = request.recorder.node_status(node.name) or {
            node.status_key: node.name  # type: ignore
        }

    @property
    def upgrade_status(self) -> dict:
        return self.node_status.setdefault("upgradeStatus", {})

    def holds(self, phase: Phase) -> bool:
        upgrade_status = self.upgrade_status
        current = upgrade_status.get("upgradePhase", UpgradePhase.NONE.value)
        if phase is Phase.PRECHECK:
            return upgrade_status.get("underUpgrade") != T
        if phase is Phase.PREP:
            return current in (
                UpgradePhase.NONE.value,
                UpgradePhase.CONTROLLER_UPDATED.value,
            )
        if phase is Phase.MAIN:
            return current == UpgradePhase.PREPARATION_COMPLETE.value
        if phase is Phase.POST:
            return current == UpgradePhase.NODE_RESTARTING.value
        return current == UpgradePhase.RECOVERING_DATA.value

    async def signal(self, phase: Phase) -> None:
        upgrade_status = self.upgrade_status
        logger = self.request.logger
        if phase is Phase.PRECHECK:
            logger.info("Beginning restart of node '%s'", self.node.name)
            upgrade_status["underUpgrade"] = T.value
        elif phase is Phase.PREP:
            upgrade_status["upgradePhase"] = UpgradePhase.PREPARATION_COMPLETE.value
        elif phase is Phase.MAIN:
            upgrade_status["upgradePhase"] = UpgradePhase.NODE_RESTARTING.value
        elif phase is Phase.POST:
            upgrade_status["upgradePhase"] = UpgradePhase.RECOVERING_DATA.value
        elif phase is Phase.RECOVERY:
            logger.info("Completed restart of node '%s'", self.node.name)
            upgrade_status["upgradePhase"] = UpgradePhase.CONTROLLER_UPDATED.value
            upgrade_status["underUpgrade"] = ""
            upgrade_status["scheduledUpgrade"] = ""
            upgrade_status["scheduledRedeploy"] = ""
        await self.request.recorder.set_node_status(
            self.node.name, copy.deepcopy(self.node_status)
        )


class RestartActions:
    """
    The operations the phases of the campaigns are made of.

    :param request: The reconciliation the campaign is part of.
    :param nodes: The nodes scheduled for the campaign.
    """

    def __init__(self, request: ClusterRequest, nodes: List[ManagedNode]):
        self.request = request
        self.nodes = nodes

    @property
    def gateway(self):
        return self.request.gateway

    @property
    def logger(self) -> logging.Logger:
        return self.request.logger

    async def noop(self) -> None:
        pass

    async def ensure_cluster_health_valid(self) -> None:
        try:
            health = await self.gateway.get_cluster_health_status()
        except GatewayError as e:
            self.logger.info("Unable to read the cluster health: %s", e)
            health = ""
        if health not in DESIRED_CLUSTER_HEALTH:
            raise OperatorError(
                f"Waiting for cluster to be recovered. Cluster "
                f"'{self.request.namespace}/{self.request.name}' is "
                f"'{health}', needs to be one of {', '.join(DESIRED_CLUSTER_HEALTH)}"
            )

    async def required_set_primaries_and_flush(self) -> None:
        if not await self.gateway.set_shard_allocation(
            ShardAllocation.PRIMARIES.value
        ):
            raise OperatorError(
                "Unable to set shard allocation to primaries for cluster "
                f"'{self.request.namespace}/{self.request.name}'"
            )
        try:
            flushed = await self.gateway.do_synchronized_flush()
        except GatewayError as e:
            self.logger.error("Failed to flush nodes: %s", e)
            flushed = False
        if not flushed:
            raise FlushShardsFailed("Flush shards failed")

    async def optional_set_primaries_and_flush(self) -> None:
        try:
            await self.required_set_primaries_and_flush()
        except OperatorError as e:
            self.logger.error("Failed to set primaries shards and flush: %s", e)

    async def push_node_updates(self) -> None:
        for node in self.nodes:
            await node.progress_node_changes()

    async def scale_down_nodes(self) -> None:
        for node in self.nodes:
            await node.scale_down()

    async def scale_up_nodes(self) -> None:
        for node in self.nodes:
            await node.scale_up()
            await node.refresh_hashes()

    async def wait_all_nodes_rejoin(self) -> None:
        for node in self.nodes:
            await node.wait_for_node_rejoin_cluster()

    async def scale_down_then_up(self) -> None:
        # Nodes cannot be asked whether they left once the whole cluster is
        # down, so this looks at the pods instead.
        await self.scale_down_nodes()
        if await self.request.any_node_ready():
            raise OperatorError("Waiting for all nodes to leave the cluster")
        await self.scale_up_nodes()

    async def scale_down_then_up_nodes(self) -> None:
        await self.scale_down_nodes()
        for node in self.nodes:
            await node.wait_for_node_leave_cluster()
        await self.scale_up_nodes()
        await self.wait_all_nodes_rejoin()

    async def wait_all_nodes_rejoin_and_set_all_shards(self) -> None:
        await self.wait_all_nodes_rejoin()
        if not await self.gateway.set_shard_allocation(ShardAllocation.ALL.value):
            raise OperatorError("Failed to enable shard allocation")


class Campaign:
    """
    A restart campaign over a set of nodes.

    :param kind: What the campaign does.
    :param scope: Where the progress of the campaign is persisted.
    :param actions: The action to run for every phase.
    """

    def __init__(
        self, kind: CampaignKind, scope: Scope, actions: Dict[Phase, Action]
    ):
        self.kind = kind
        self.scope = scope
        self.actions = actions

    async def run(self) -> None:
        """
        Run every phase whose guard holds, in order.

        The first failing action ends the campaign, except a failed flush
        during preparation, which is ignored.

        :raises OperatorError: When an action failed. No state is advanced for
            the failed phase.
        """
        for phase in Phase:
            if not self.scope.holds(phase):
                continue
            try:
                await self.actions[phase]()
            except FlushShardsFailed:
                if phase is not Phase.PREP:
                    raise
            await self.scope.signal(phase)


def build_campaign(
    kind: CampaignKind, request: ClusterRequest, nodes: List[ManagedNode]
) -> Campaign:
    """
    Build the campaign of ``kind`` over ``nodes``. Node campaigns require
    exactly one node.
    """
    actions = RestartActions(request, nodes)
    health = actions.ensure_cluster_health_valid
    rejoin = actions.wait_all_nodes_rejoin_and_set_all_shards

    scope: Scope
    if kind in (CampaignKind.NODE_UPDATE, CampaignKind.NODE_RESTART):
        if len(nodes) != 1:
            raise ValueError(f"A {kind.value} campaign needs exactly one node")
        scope = NodeScope(request, nodes[0])
    else:
        scope = ClusterScope(request, nodes)

    if kind is CampaignKind.FULL_CLUSTER_UPDATE:
        phases = (
            health,
            actions.required_set_primaries_and_flush,
            actions.push_node_updates,
            rejoin,
            health,
        )
    elif kind is CampaignKind.FULL_CLUSTER_CERT_RESTART:
        phases = (
            actions.noop,
            actions.noop,
            actions.scale_down_then_up,
            rejoin,
            health,
        )
    elif kind is CampaignKind.FULL_CLUSTER_RESTART:
        phases = (
            health,
            actions.optional_set_primaries_and_flush,
            actions.scale_down_then_up,
            rejoin,
            health,
        )
    elif kind is CampaignKind.NODE_UPDATE:
        phases = (
            health,
            actions.required_set_primaries_and_flush,
            actions.push_node_updates,
            rejoin,
            health,
        )
    else:
        phases = (
            health,
            actions.optional_set_primaries_and_flush,
            actions.scale_down_then_up_nodes,
            rejoin,
            health,
        )
    return Campaign(kind, scope, dict(zip(Phase, phases)))


async def perform(
    kind: CampaignKind, request: ClusterRequest, nodes: List[ManagedNode]
) -> None:
    await build_campaign(kind, request, nodes).run()


async def perform_rolling_update(
    request: ClusterRequest, nodes: List[ManagedNode]
) -> None:
    for node in nodes:
        await perform(CampaignKind.NODE_UPDATE, request, [node])


async def perform_rolling_restart(
    request: ClusterRequest, nodes: List[ManagedNode]
) -> None:
    for node in nodes:
        await perform(CampaignKind.NODE_RESTART, request, [node])
