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

from unittest import mock

import pytest

from elastic.operator.cluster import (
    create_or_update_cluster,
    is_node_stuck,
    node_upgrade_in_progress,
    scheduled_cert_redeploy_nodes,
    scheduled_upgrade_nodes,
)
from elastic.operator.exceptions import InvalidSpecError, OperatorError
from elastic.operator.nodes import ReplicatedNode, get_statefulset
from elastic.operator.request import desired_replica_count

from .utils import (
    CLUSTER_NAME,
    NAMESPACE,
    FakeClusterRequest,
    FakeGateway,
    FakeNode,
    logger,
    make_pod,
)

SPEC = {
    "redundancyPolicy": "SingleRedundancy",
    "nodes": [{"roles": ["master", "data"], "nodeCount": 2, "genUUID": "a1b2c3d4"}],
}


def node_status(name, **upgrade_status):
    return {"deploymentName": name, "upgradeStatus": upgrade_status}


@pytest.fixture
def flow():
    with mock.patch(
        "elastic.operator.cluster.validate_configuration", new_callable=mock.AsyncMock
    ) as validate, mock.patch(
        "elastic.operator.cluster.populate_nodes", new_callable=mock.AsyncMock
    ) as populate, mock.patch(
        "elastic.operator.cluster.report_restart"
    ) as report:
        yield validate, populate, report


@pytest.mark.parametrize(
    "policy, data, replicas",
    [
        ("FullRedundancy", 5, 4),
        ("MultipleRedundancy", 5, 2),
        ("MultipleRedundancy", 2, 0),
        ("SingleRedundancy", 5, 1),
        ("ZeroRedundancy", 5, 0),
        ("", 1, 0),
        ("", 3, 1),
    ],
)
def test_desired_replica_count(policy, data, replicas):
    assert desired_replica_count(policy, data) == replicas


@pytest.mark.parametrize(
    "conditions, stuck",
    [
        ([], False),
        ([{"type": "Unschedulable", "status": "True"}], True),
        (
            [
                {
                    "type": "ElasticsearchContainerWaiting",
                    "status": "True",
                    "reason": "ImagePullBackOff",
                }
            ],
            True,
        ),
        (
            [
                {
                    "type": "ElasticsearchContainerWaiting",
                    "status": "True",
                    "reason": "ContainerCreating",
                }
            ],
            False,
        ),
    ],
)
def test_is_node_stuck(conditions, stuck):
    assert is_node_stuck({"conditions": conditions}) is stuck


def test_scheduled_nodes():
    statefulset = get_statefulset(
        NAMESPACE,
        CLUSTER_NAME,
        "es-m",
        {},
        {"roles": ["master"], "nodeCount": 3},
        [],
    )
    master = ReplicatedNode(
        NAMESPACE, CLUSTER_NAME, statefulset, ["master"], FakeGateway(), logger
    )
    data = FakeNode("es-d-1")
    request = FakeClusterRequest(
        SPEC,
        nodes=[data, master],
        status={
            "nodes": [
                node_status("es-d-1", scheduledRedeploy="True", underUpgrade="True"),
                {
                    "statefulSetName": "es-m",
                    "upgradeStatus": {
                        "scheduledRedeploy": "True",
                        "scheduledUpgrade": "True",
                    },
                },
                node_status("es-gone", scheduledUpgrade="True"),
            ]
        },
    )
    assert scheduled_cert_redeploy_nodes(request) == [master, data]
    assert scheduled_upgrade_nodes(request) == [master]
    assert node_upgrade_in_progress(request) is data


class TestCreateOrUpdateCluster:
    @pytest.mark.asyncio
    async def test_new_cluster(self, flow):
        validate, populate, report = flow
        gateway = FakeGateway()
        nodes = [
            FakeNode("es-d-1", roles=["master", "data"], exists=False),
            FakeNode("es-d-2", roles=["master", "data"], exists=False),
        ]
        request = FakeClusterRequest(
            SPEC,
            gateway=gateway,
            nodes=nodes,
            pods=[
                make_pod("es-d-1-abc", node_name="es-d-1"),
                make_pod("es-d-2-abc", node_name="es-d-2"),
            ],
        )
        await create_or_update_cluster(request)

        validate.assert_awaited_once_with(request)
        populate.assert_awaited_once_with(request)
        assert [n.calls for n in nodes] == [["create"], ["create"]]
        assert request.status["nodes"] == [
            {
                "deploymentName": "es-d-1",
                "upgradeStatus": {"scheduledUpgrade": "", "scheduledRedeploy": ""},
                "roles": ["master", "data"],
                "conditions": [],
            },
            {
                "deploymentName": "es-d-2",
                "upgradeStatus": {"scheduledUpgrade": "", "scheduledRedeploy": ""},
                "roles": ["master", "data"],
                "conditions": [],
            },
        ]
        assert request.status["cluster"]["status"] == "green"
        assert gateway.calls == [
            ("clear_transient_shard_allocation",),
            ("set_min_master_nodes", 2),
            ("set_shard_allocation", "all"),
            ("update_replica_count", 1),
        ]
        report.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_spec(self, flow):
        validate, populate, _ = flow
        validate.side_effect = InvalidSpecError("No data nodes requested")
        request = FakeClusterRequest(SPEC)
        with pytest.raises(InvalidSpecError):
            await create_or_update_cluster(request)
        populate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rolling_update(self, flow):
        _, _, report = flow
        gateway = FakeGateway(versions=["6.8.23"])
        nodes = [FakeNode("es-d-1", changed=True), FakeNode("es-d-2")]
        request = FakeClusterRequest(
            SPEC,
            gateway=gateway,
            nodes=nodes,
            status={
                "nodes": [
                    node_status("es-d-1", scheduledUpgrade="True"),
                    node_status("es-d-2"),
                ]
            },
        )
        await create_or_update_cluster(request)

        report.assert_called_once_with("NodeUpdate")
        assert nodes[0].calls[0] == "progress_node_changes"
        assert "progress_node_changes" not in nodes[1].calls
        assert nodes[1].calls == ["create"]
        upgrade_status = request.recorder.node_status("es-d-1")["upgradeStatus"]
        assert upgrade_status["scheduledUpgrade"] == ""
        assert upgrade_status["upgradePhase"] == "controllerUpdated"

    @pytest.mark.asyncio
    async def test_full_cluster_update_for_old_versions(self, flow):
        _, _, report = flow
        gateway = FakeGateway(versions=["5.6.16"])
        nodes = [FakeNode("es-d-1", changed=True)]
        request = FakeClusterRequest(
            SPEC,
            gateway=gateway,
            nodes=nodes,
            status={"nodes": [node_status("es-d-1", scheduledUpgrade="True")]},
        )
        await create_or_update_cluster(request)

        report.assert_called_once_with("FullClusterUpdate")
        assert ("do_synchronized_flush",) in gateway.calls
        assert request.status["conditions"] == []

    @pytest.mark.asyncio
    async def test_cert_restart_first(self, flow):
        _, _, report = flow
        nodes = [FakeNode("es-d-1"), FakeNode("es-d-2")]
        request = FakeClusterRequest(
            SPEC,
            nodes=nodes,
            status={
                "nodes": [
                    node_status("es-d-1", scheduledRedeploy="True"),
                    node_status("es-d-2"),
                ]
            },
        )
        await create_or_update_cluster(request)

        report.assert_called_once_with("FullClusterCertRestart")
        assert nodes[0].calls[:2] == ["scale_down", "scale_up"]
        assert nodes[1].calls == ["create"]
        upgrade_status = request.recorder.node_status("es-d-1")["upgradeStatus"]
        assert upgrade_status["scheduledRedeploy"] == ""

    @pytest.mark.asyncio
    async def test_node_restart_in_progress(self, flow):
        _, _, report = flow
        nodes = [FakeNode("es-d-1")]
        request = FakeClusterRequest(
            SPEC,
            nodes=nodes,
            status={
                "nodes": [
                    node_status(
                        "es-d-1", underUpgrade="True", upgradePhase="nodeRestarting"
                    )
                ]
            },
        )
        await create_or_update_cluster(request)

        report.assert_called_once_with("NodeRestart")
        assert nodes[0].calls == [
            "wait_for_node_rejoin_cluster",
            "create",
        ]

    @pytest.mark.asyncio
    async def test_failed_campaign_stops_reconciliation(self, flow):
        _, _, report = flow
        gateway = FakeGateway(health="red")
        nodes = [FakeNode("es-d-1", changed=True)]
        request = FakeClusterRequest(
            SPEC,
            gateway=gateway,
            nodes=nodes,
            status={"nodes": [node_status("es-d-1", scheduledUpgrade="True")]},
        )
        with pytest.raises(OperatorError, match="Waiting for cluster to be recovered"):
            await create_or_update_cluster(request)

        report.assert_not_called()
        assert nodes[0].calls == []

    @pytest.mark.asyncio
    async def test_unschedulable_nodes_are_progressed(self, flow):
        nodes = [FakeNode("es-d-1")]
        request = FakeClusterRequest(
            SPEC,
            nodes=nodes,
            status={"nodes": [node_status("es-d-1")]},
            pods=[make_pod("es-d-1-abc", node_name="es-d-1", unschedulable=True)],
        )
        await create_or_update_cluster(request)

        assert nodes[0].calls[0] == "progress_node_changes"
        (condition,) = request.recorder.node_status("es-d-1")["conditions"]
        assert condition["type"] == "Unschedulable"
