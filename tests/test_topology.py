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

from elastic.operator.nodes import ReplicatedNode, ScalableNode
from elastic.operator.topology import (
    build_nodes,
    node_base_name,
    node_name_suffix,
    populate_nodes,
    set_uuids,
    update_min_masters,
    validate_uuids,
)

from .utils import CLUSTER_NAME, FakeClusterRequest, FakeGateway, FakeNode, make_pod

SPEC = {
    "redundancyPolicy": "SingleRedundancy",
    "nodeSpec": {"image": "elasticsearch:6.8.23"},
    "nodes": [
        {"roles": ["data", "client", "master"], "nodeCount": 2, "genUUID": "a1b2c3d4"},
        {"roles": ["master"], "nodeCount": 1, "genUUID": "e5f6g7h8"},
        {"roles": ["client"], "nodeCount": 2, "genUUID": "i9j0k1l2"},
    ],
}


@pytest.mark.parametrize(
    "roles, suffix",
    [
        (["master", "data", "client"], "cdm"),
        (["data"], "d"),
        (["master", "client"], "cm"),
        ([], ""),
    ],
)
def test_node_name_suffix(roles, suffix):
    assert node_name_suffix(roles) == suffix


def test_node_base_name():
    assert node_base_name("es", SPEC["nodes"][0]) == "es-cdm-a1b2c3d4"


def test_build_nodes():
    request = FakeClusterRequest(SPEC)
    nodes = build_nodes(request)
    assert [(type(n), n.name) for n in nodes] == [
        (ScalableNode, f"{CLUSTER_NAME}-cdm-a1b2c3d4-1"),
        (ScalableNode, f"{CLUSTER_NAME}-cdm-a1b2c3d4-2"),
        (ReplicatedNode, f"{CLUSTER_NAME}-m-e5f6g7h8"),
        (ReplicatedNode, f"{CLUSTER_NAME}-c-i9j0k1l2"),
    ]
    assert nodes[3].replicas == 2
    assert nodes[0].workload.metadata.owner_references[0].uid == "1234-abcd"
    assert nodes[0].workload.spec.template.spec.containers[0].image == (
        "elasticsearch:6.8.23"
    )


class TestValidateUuids:
    def test_valid(self):
        statuses = [
            {"deploymentName": "es-cdm-a1b2c3d4-1"},
            {"statefulSetName": "es-m-e5f6g7h8"},
        ]
        assert validate_uuids("es", statuses, SPEC["nodes"]) is None

    def test_changed_uuid(self):
        statuses = [{"deploymentName": "es-cdm-zzzzzzzz-1"}]
        assert validate_uuids("es", statuses, SPEC["nodes"]) == (
            "Previously used GenUUID 'zzzzzzzz' is no longer found in spec.nodes"
        )

    def test_invalid_name(self):
        statuses = [{"deploymentName": "es-cdm"}]
        assert validate_uuids("es", statuses, SPEC["nodes"]) == (
            "Invalid name found for node 'es-cdm'"
        )

    def test_no_nodes(self):
        assert validate_uuids("es", [], []) is None


class TestSetUuids:
    @pytest.mark.asyncio
    async def test_assigns_missing(self):
        spec = {"nodes": [{"roles": ["data"], "nodeCount": 1}]}
        request = FakeClusterRequest(spec)
        coapi = mock.AsyncMock()
        coapi.replace_namespaced_custom_object.side_effect = (
            lambda **kwargs: kwargs["body"]
        )
        with mock.patch(
            "elastic.operator.topology.get_elasticsearch_resource",
            new_callable=mock.AsyncMock,
            return_value={"spec": {"nodes": [{"roles": ["data"], "nodeCount": 1}]}},
        ), mock.patch("elastic.operator.topology.GlobalApiClient"), mock.patch(
            "elastic.operator.topology.CustomObjectsApi", return_value=coapi
        ):
            await set_uuids(request)

        uuid = request.node_specs[0]["genUUID"]
        assert len(uuid) == 8
        body = coapi.replace_namespaced_custom_object.await_args.kwargs["body"]
        assert body["spec"]["nodes"][0]["genUUID"] == uuid

    @pytest.mark.asyncio
    async def test_nothing_to_assign(self):
        request = FakeClusterRequest(SPEC)
        with mock.patch(
            "elastic.operator.topology.get_elasticsearch_resource",
            new_callable=mock.AsyncMock,
        ) as get_resource:
            await set_uuids(request)
        get_resource.assert_not_awaited()


class TestUpdateMinMasters:
    @pytest.mark.asyncio
    async def test_sets_quorum(self):
        gateway = FakeGateway(node_count=3)
        spec = {"nodes": [{"roles": ["master"], "nodeCount": 3}]}
        request = FakeClusterRequest(spec, gateway=gateway, pods=[make_pod("a")])
        await update_min_masters(request)
        assert gateway.calls == [("set_min_master_nodes", 2)]

        await update_min_masters(request)
        assert gateway.calls == [("set_min_master_nodes", 2)]

    @pytest.mark.asyncio
    async def test_waits_for_nodes(self):
        gateway = FakeGateway(node_count=1)
        spec = {"nodes": [{"roles": ["master"], "nodeCount": 3}]}
        request = FakeClusterRequest(spec, gateway=gateway, pods=[make_pod("a")])
        await update_min_masters(request)
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_no_ready_pods(self):
        gateway = FakeGateway(node_count=3)
        spec = {"nodes": [{"roles": ["master"], "nodeCount": 3}]}
        request = FakeClusterRequest(
            spec, gateway=gateway, pods=[make_pod("a", ready=False)]
        )
        await update_min_masters(request)
        assert gateway.calls == []


class TestPopulateNodes:
    @pytest.mark.asyncio
    async def test_keeps_known_nodes(self):
        known = FakeNode(f"{CLUSTER_NAME}-cdm-a1b2c3d4-1")
        known.secret_hash = "remembered"
        request = FakeClusterRequest(SPEC, nodes=[known])
        await populate_nodes(request)

        names = [n.name for n in request.nodes]
        assert names == [
            f"{CLUSTER_NAME}-cdm-a1b2c3d4-1",
            f"{CLUSTER_NAME}-cdm-a1b2c3d4-2",
            f"{CLUSTER_NAME}-m-e5f6g7h8",
            f"{CLUSTER_NAME}-c-i9j0k1l2",
        ]
        assert request.nodes[0] is known
        assert known.secret_hash == "remembered"
        # The known node adopted the desired workload
        assert known.workload.spec.template is not None
        assert known.workload.spec.strategy.type == "Recreate"

    @pytest.mark.asyncio
    async def test_removes_nodes(self):
        removed = FakeNode(f"{CLUSTER_NAME}-cdm-deadbeef-1")
        gateway = FakeGateway(health="yellow")
        request = FakeClusterRequest(
            SPEC,
            gateway=gateway,
            nodes=[removed],
            status={"nodes": [{"deploymentName": removed.name}]},
        )
        await populate_nodes(request)

        assert removed.calls == ["delete"]
        assert removed not in request.nodes
        assert request.status["nodes"] == []

    @pytest.mark.asyncio
    async def test_removal_waits_for_health(self):
        removed = FakeNode(f"{CLUSTER_NAME}-cdm-deadbeef-1")
        request = FakeClusterRequest(
            SPEC, gateway=FakeGateway(health="red"), nodes=[removed]
        )
        await populate_nodes(request)

        assert removed.calls == []
        assert removed in request.nodes

    @pytest.mark.asyncio
    async def test_removal_lowers_min_masters(self):
        removed = FakeNode(f"{CLUSTER_NAME}-m-deadbeef", roles=["master"])
        # The cluster had five master nodes before
        gateway = FakeGateway(node_count=5, min_master_nodes=3)
        request = FakeClusterRequest(
            SPEC, gateway=gateway, nodes=[removed], pods=[make_pod("a")]
        )
        await populate_nodes(request)

        assert gateway.calls == [("set_min_master_nodes", 2)]
        assert removed.calls == ["delete"]
