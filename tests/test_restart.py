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

import pytest

from elastic.operator.exceptions import OperatorError
from elastic.operator.restart import (
    CampaignKind,
    ClusterScope,
    Phase,
    build_campaign,
    perform,
    perform_rolling_restart,
    perform_rolling_update,
)

from .utils import FakeClusterRequest, FakeGateway, FakeNode, make_pod


def conditions(request):
    return {c["type"]: c["status"] for c in request.status.get("conditions") or []}


def cluster(gateway=None, nodes=None, status=None, pods=None):
    nodes = nodes if nodes is not None else [FakeNode("es-d-1"), FakeNode("es-d-2")]
    return (
        FakeClusterRequest(
            {}, gateway=gateway, nodes=nodes, status=status, pods=pods
        ),
        nodes,
    )


class TestClusterCampaigns:
    @pytest.mark.asyncio
    async def test_full_cluster_update(self):
        gateway = FakeGateway()
        request, nodes = cluster(gateway)
        await perform(CampaignKind.FULL_CLUSTER_UPDATE, request, nodes)

        assert conditions(request) == {}
        assert gateway.calls == [
            ("set_shard_allocation", "primaries"),
            ("do_synchronized_flush",),
            ("set_shard_allocation", "all"),
        ]
        for node in nodes:
            assert node.calls == [
                "progress_node_changes",
                "wait_for_node_rejoin_cluster",
            ]

    @pytest.mark.asyncio
    async def test_unhealthy_cluster_does_not_start(self):
        gateway = FakeGateway(health="red")
        request, nodes = cluster(gateway)
        with pytest.raises(OperatorError, match="Waiting for cluster to be recovered"):
            await perform(CampaignKind.FULL_CLUSTER_UPDATE, request, nodes)
        assert conditions(request) == {}
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_failed_phase_is_retried(self):
        gateway = FakeGateway(acknowledge=False)
        request, nodes = cluster(gateway)
        with pytest.raises(OperatorError, match="Unable to set shard allocation"):
            await perform(CampaignKind.FULL_CLUSTER_UPDATE, request, nodes)
        # The precheck passed, preparation has to be repeated
        assert conditions(request) == {"UpdatingESSettings": "True"}
        assert ClusterScope(request, nodes).holds(Phase.PREP)

        gateway.acknowledge = True
        gateway.calls.clear()
        await perform(CampaignKind.FULL_CLUSTER_UPDATE, request, nodes)
        assert conditions(request) == {}
        assert gateway.calls[0] == ("set_shard_allocation", "primaries")

    @pytest.mark.asyncio
    async def test_failed_flush_is_ignored(self):
        gateway = FakeGateway(flushed=False)
        request, nodes = cluster(gateway)
        await perform(CampaignKind.FULL_CLUSTER_UPDATE, request, nodes)
        assert conditions(request) == {}
        assert nodes[0].calls[0] == "progress_node_changes"

    @pytest.mark.asyncio
    async def test_resumes_with_recovery(self):
        gateway = FakeGateway(health="red")
        request, nodes = cluster(
            gateway, status={"conditions": [{"type": "Recovering", "status": "True"}]}
        )
        with pytest.raises(OperatorError):
            await perform(CampaignKind.FULL_CLUSTER_RESTART, request, nodes)
        assert conditions(request) == {"Recovering": "True"}

        gateway.health = "yellow"
        await perform(CampaignKind.FULL_CLUSTER_RESTART, request, nodes)
        assert conditions(request) == {}
        assert gateway.calls == []
        assert nodes[0].calls == []

    @pytest.mark.asyncio
    async def test_cert_restart_waits_for_nodes_to_leave(self):
        gateway = FakeGateway(health="red")
        request, nodes = cluster(gateway, pods=[make_pod("es-d-1-abc")])
        with pytest.raises(OperatorError, match="leave the cluster"):
            await perform(CampaignKind.FULL_CLUSTER_CERT_RESTART, request, nodes)
        assert conditions(request) == {"Restarting": "True"}
        assert [n.calls for n in nodes] == [["scale_down"], ["scale_down"]]

    @pytest.mark.asyncio
    async def test_cert_restart(self):
        gateway = FakeGateway()
        request, nodes = cluster(
            gateway,
            status={
                "nodes": [
                    {
                        "deploymentName": "es-d-1",
                        "upgradeStatus": {"scheduledRedeploy": "True"},
                    }
                ]
            },
        )
        await perform(CampaignKind.FULL_CLUSTER_CERT_RESTART, request, nodes)

        assert conditions(request) == {}
        assert gateway.calls == [("set_shard_allocation", "all")]
        assert nodes[0].calls == [
            "scale_down",
            "scale_up",
            "refresh_hashes",
            "wait_for_node_rejoin_cluster",
        ]
        upgrade_status = request.recorder.node_status("es-d-1")["upgradeStatus"]
        assert upgrade_status["scheduledRedeploy"] == "False"
        assert request.recorder.node_status("es-d-2")["upgradeStatus"] == {
            "scheduledRedeploy": "False"
        }

    @pytest.mark.asyncio
    async def test_full_cluster_restart_optional_flush(self):
        gateway = FakeGateway(acknowledge=False)
        request, nodes = cluster(gateway)
        with pytest.raises(OperatorError, match="Failed to enable shard allocation"):
            await perform(CampaignKind.FULL_CLUSTER_RESTART, request, nodes)
        # Preparation and the restart itself completed
        assert conditions(request) == {
            "Restarting": "True",
            "UpdatingESSettings": "True",
        }
        assert nodes[0].calls[:2] == ["scale_down", "scale_up"]


class TestNodeCampaigns:
    @pytest.mark.asyncio
    async def test_node_update(self):
        gateway = FakeGateway()
        node = FakeNode("es-d-1", changed=True)
        request, _ = cluster(
            gateway,
            nodes=[node],
            status={
                "nodes": [
                    {
                        "deploymentName": "es-d-1",
                        "upgradeStatus": {"scheduledUpgrade": "True"},
                    }
                ]
            },
        )
        await perform(CampaignKind.NODE_UPDATE, request, [node])

        assert request.recorder.node_status("es-d-1")["upgradeStatus"] == {
            "scheduledUpgrade": "",
            "scheduledRedeploy": "",
            "underUpgrade": "",
            "upgradePhase": "controllerUpdated",
        }
        assert node.calls == ["progress_node_changes", "wait_for_node_rejoin_cluster"]
        # Node campaigns do not touch the cluster conditions
        assert conditions(request) == {}

    @pytest.mark.asyncio
    async def test_node_restart_resumes(self):
        gateway = FakeGateway()
        node = FakeNode("es-d-1")
        request, _ = cluster(
            gateway,
            nodes=[node],
            status={
                "nodes": [
                    {
                        "deploymentName": "es-d-1",
                        "upgradeStatus": {
                            "underUpgrade": "True",
                            "upgradePhase": "preparationComplete",
                        },
                    }
                ]
            },
        )
        await perform(CampaignKind.NODE_RESTART, request, [node])

        assert node.calls == [
            "scale_down",
            "wait_for_node_leave_cluster",
            "scale_up",
            "refresh_hashes",
            "wait_for_node_rejoin_cluster",
            "wait_for_node_rejoin_cluster",
        ]
        assert gateway.calls == [("set_shard_allocation", "all")]
        upgrade_status = request.recorder.node_status("es-d-1")["upgradeStatus"]
        assert upgrade_status["underUpgrade"] == ""
        assert upgrade_status["upgradePhase"] == "controllerUpdated"

    @pytest.mark.asyncio
    async def test_node_phase_is_persisted_on_failure(self):
        gateway = FakeGateway(acknowledge=False)
        node = FakeNode("es-d-1")
        request, _ = cluster(gateway, nodes=[node])
        with pytest.raises(OperatorError):
            await perform(CampaignKind.NODE_UPDATE, request, [node])
        assert request.recorder.node_status("es-d-1") == {
            "deploymentName": "es-d-1",
            "upgradeStatus": {"underUpgrade": "True"},
        }

    @pytest.mark.asyncio
    async def test_rolling_update_and_restart(self):
        gateway = FakeGateway()
        request, nodes = cluster(gateway)
        await perform_rolling_update(request, nodes)
        await perform_rolling_restart(request, nodes)
        for node in nodes:
            assert "progress_node_changes" in node.calls
            assert "scale_down" in node.calls
            upgrade_status = request.recorder.node_status(node.name)["upgradeStatus"]
            assert upgrade_status["upgradePhase"] == "controllerUpdated"

    def test_node_campaign_needs_one_node(self):
        request, nodes = cluster()
        with pytest.raises(ValueError, match="exactly one node"):
            build_campaign(CampaignKind.NODE_RESTART, request, nodes)
