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

import abc
import copy
import logging
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple

from kubernetes_asyncio.client import (
    ApiException,
    AppsV1Api,
    CoreV1Api,
    V1Deployment,
    V1DeploymentSpec,
    V1DeploymentStrategy,
    V1LabelSelector,
    V1ObjectMeta,
    V1OwnerReference,
    V1PersistentVolumeClaim,
    V1PersistentVolumeClaimSpec,
    V1Pod,
    V1PodTemplateSpec,
    V1ResourceRequirements,
    V1RollingUpdateStatefulSetStrategy,
    V1StatefulSet,
    V1StatefulSetSpec,
    V1StatefulSetUpdateStrategy,
)

from elastic.operator.config import config
from elastic.operator.constants import (
    DEPLOYMENT_PROGRESS_DEADLINE_SECONDS,
    DEPLOYMENT_REVISION_ANNOTATION,
    LABEL_NODE_NAME,
)
from elastic.operator.exceptions import GatewayError
from elastic.operator.podtemplate import (
    VOLUME_STORAGE,
    get_claim_name,
    get_node_labels,
    get_pod_template,
    get_selector_labels,
    hash_configmap_data,
    hash_data,
    pod_spec_differs,
    uses_persistent_storage,
)
from elastic.operator.utils.formatting import convert_to_bytes, format_bitmath
from elastic.operator.utils.k8s_api_client import GlobalApiClient
from elastic.operator.utils.kubeapi import (
    call_kubeapi,
    get_configmap_data,
    get_secret_data,
    list_cluster_pods,
    retry_on_conflict,
)
from elastic.operator.utils.polling import poll_until
from elastic.operator.utils.typing import NodeStatus, UpgradeStatus, Workload


class ManagedNode(abc.ABC):
    """
    A single Kubernetes workload running Elasticsearch nodes of one role
    combination.

    Instances are rebuilt on every reconciliation from the desired state.
    Nodes that were already known keep their instance, and with it the
    configmap and secret hashes that were observed when the workload was last
    rolled out (see :meth:`update_reference`).
    """

    #: The key in ``status.nodes[]`` holding the workload name.
    status_key: str

    def __init__(
        self,
        namespace: str,
        cluster_name: str,
        workload: Workload,
        roles: Iterable[str],
        gateway,
        logger: logging.Logger,
    ):
        self.namespace = namespace
        self.cluster_name = cluster_name
        self.workload = workload
        self.roles = list(roles)
        self.gateway = gateway
        self.logger = logger
        self.configmap_hash = ""
        self.secret_hash = ""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.namespace}/{self.name}>"

    @property
    def name(self) -> str:
        return self.workload.metadata.name

    @property
    def replicas(self) -> int:
        return self.workload.spec.replicas

    def update_reference(self, other: "ManagedNode") -> None:
        """
        Adopt the desired workload and the collaborators of ``other`` while
        keeping the hash memory of this node.
        """
        self.workload = other.workload
        self.roles = other.roles
        self.gateway = other.gateway
        self.logger = other.logger

    @abc.abstractmethod
    async def _read_workload(self, apps: AppsV1Api) -> Workload:
        ...

    @abc.abstractmethod
    async def _create_workload(self, apps: AppsV1Api) -> Workload:
        ...

    @abc.abstractmethod
    async def _replace_workload(self, apps: AppsV1Api, body: Workload) -> Workload:
        ...

    @abc.abstractmethod
    def _delete_api(self, apps: AppsV1Api) -> Callable[..., Any]:
        ...

    @abc.abstractmethod
    async def create(self) -> None:
        """
        Create the workload if it does not exist yet, otherwise converge its
        replica count.
        """

    @abc.abstractmethod
    async def progress_node_changes(self) -> None:
        """
        Roll the desired pod template out to the running pods.
        """

    @abc.abstractmethod
    async def _is_member(self) -> bool:
        ...

    @abc.abstractmethod
    async def _has_left(self) -> bool:
        ...

    async def _read(self) -> Optional[Workload]:
        async with GlobalApiClient() as api_client:
            apps = AppsV1Api(api_client)
            try:
                return await self._read_workload(apps)
            except ApiException as e:
                if e.status == 404:
                    return None
                raise

    async def _modify(self, change: Callable[[Workload], bool]) -> None:
        """
        Read the live workload, apply ``change`` and write it back when
        ``change`` returned ``True``. Conflicting writes are retried with a
        fresh copy.
        """

        async def attempt():
            async with GlobalApiClient() as api_client:
                apps = AppsV1Api(api_client)
                live = await self._read_workload(apps)
                if change(live):
                    await self._replace_workload(apps, live)

        await retry_on_conflict(attempt, self.logger)

    async def is_missing(self) -> bool:
        return await self._read() is None

    async def delete(self) -> None:
        async with GlobalApiClient() as api_client:
            apps = AppsV1Api(api_client)
            await call_kubeapi(
                self._delete_api(apps),
                self.logger,
                continue_on_absence=True,
                namespace=self.namespace,
                name=self.name,
            )

    async def is_changed(self) -> bool:
        """
        Return ``True`` when the pod template of the live workload differs
        from the desired one. A workload that cannot be read is not
        considered changed.
        """
        try:
            live = await self._read()
        except ApiException as e:
            self.logger.warning("Unable to read node '%s': %s", self.name, e.reason)
            return False
        if live is None:
            return False
        return pod_spec_differs(
            live.spec.template.spec, self.workload.spec.template.spec, True
        )

    async def _current_hashes(self) -> Tuple[str, str]:
        async with GlobalApiClient() as api_client:
            core = CoreV1Api(api_client)
            configmap = await get_configmap_data(
                core, self.namespace, self.cluster_name
            )
            secret = await get_secret_data(core, self.namespace, self.cluster_name)
        return hash_configmap_data(configmap), hash_data(secret)

    async def refresh_hashes(self) -> None:
        self.configmap_hash, self.secret_hash = await self._current_hashes()

    async def state(self) -> NodeStatus:
        """
        Compute whether the node needs to be upgraded or needs a restart to
        pick up new certificates.

        A node without a remembered secret hash, e.g. after the operator
        restarted, adopts the current hash instead of scheduling a restart.
        """
        upgrade_status: UpgradeStatus = {
            "scheduledUpgrade": "",
            "scheduledRedeploy": "",
        }
        if await self.is_changed():
            upgrade_status["scheduledUpgrade"] = "True"

        _, secret_hash = await self._current_hashes()
        if not self.secret_hash:
            self.secret_hash = secret_hash
        elif secret_hash != self.secret_hash:
            upgrade_status["scheduledRedeploy"] = "True"

        return {self.status_key: self.name, "upgradeStatus": upgrade_status}

    async def execute_update(self) -> None:
        """
        Replace the pod template of the live workload with the desired one,
        if they differ.
        """
        desired = self.workload.spec.template

        def change(live: Workload) -> bool:
            if not pod_spec_differs(live.spec.template.spec, desired.spec, True):
                return False
            live.spec.template = copy.deepcopy(desired)
            return True

        await self._modify(change)

    async def set_replica_count(self, replicas: int) -> None:
        def change(live: Workload) -> bool:
            if live.spec.replicas == replicas:
                return False
            live.spec.replicas = replicas
            return True

        await self._modify(change)

    async def scale_up(self) -> None:
        await self.set_replica_count(self.replicas)

    async def scale_down(self) -> None:
        await self.set_replica_count(0)

    async def pods(self) -> List[V1Pod]:
        async with GlobalApiClient() as api_client:
            core = CoreV1Api(api_client)
            return await list_cluster_pods(
                core, self.namespace, self.cluster_name, {LABEL_NODE_NAME: self.name}
            )

    async def _poll_membership(self, condition, what: str) -> None:
        async def check() -> bool:
            try:
                return await condition()
            except GatewayError as e:
                self.logger.debug("Unable to check cluster membership: %s", e)
                return False

        await poll_until(
            check,
            timeout=config.CLUSTER_MEMBERSHIP_TIMEOUT,
            message=f"Node '{self.name}' did not {what} the cluster",
        )

    async def wait_for_node_rejoin_cluster(self) -> None:
        await self._poll_membership(self._is_member, "rejoin")

    async def wait_for_node_leave_cluster(self) -> None:
        await self._poll_membership(self._has_left, "leave")


class ScalableNode(ManagedNode):
    """
    A data node backed by a Deployment with a single replica.

    The Deployment is kept paused so that template changes only roll out when
    the operator decides to.
    """

    status_key = "deploymentName"

    def __init__(self, *args, storage: Optional[Mapping[str, Any]] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.storage = storage

    def update_reference(self, other: "ManagedNode") -> None:
        super().update_reference(other)
        self.storage = getattr(other, "storage", None)

    async def _read_workload(self, apps: AppsV1Api) -> V1Deployment:
        return await apps.read_namespaced_deployment(
            namespace=self.namespace, name=self.name
        )

    async def _create_workload(self, apps: AppsV1Api) -> V1Deployment:
        return await apps.create_namespaced_deployment(
            namespace=self.namespace, body=self.workload
        )

    async def _replace_workload(
        self, apps: AppsV1Api, body: V1Deployment
    ) -> V1Deployment:
        return await apps.replace_namespaced_deployment(
            namespace=self.namespace, name=self.name, body=body
        )

    def _delete_api(self, apps: AppsV1Api) -> Callable[..., Any]:
        return apps.delete_namespaced_deployment

    async def _create_claim(self) -> None:
        if not uses_persistent_storage(self.storage):
            return
        claim = get_persistent_volume_claim(
            get_claim_name(self.cluster_name, self.name),
            self.storage,
            self.workload.metadata.owner_references,
        )
        async with GlobalApiClient() as api_client:
            core = CoreV1Api(api_client)
            await call_kubeapi(
                core.create_namespaced_persistent_volume_claim,
                self.logger,
                continue_on_conflict=True,
                namespace=self.namespace,
                body=claim,
            )

    async def create(self) -> None:
        await self._create_claim()
        try:
            async with GlobalApiClient() as api_client:
                await self._create_workload(AppsV1Api(api_client))
        except ApiException as e:
            if e.status != 409:
                raise
            await self.set_paused(True)
            return

        self.logger.info("Created deployment '%s'", self.name)
        # Created unpaused so the first rollout happens right away.
        await self.wait_for_initial_rollout()
        await self.refresh_hashes()
        await self.set_paused(True)

    async def wait_for_initial_rollout(self) -> None:
        async def has_revision() -> bool:
            live = await self._read()
            annotations = (live.metadata.annotations or {}) if live else {}
            return DEPLOYMENT_REVISION_ANNOTATION in annotations

        await poll_until(
            has_revision,
            timeout=config.INITIAL_ROLLOUT_TIMEOUT,
            message=f"Deployment '{self.name}' was not rolled out",
        )

    async def set_paused(self, paused: bool) -> None:
        def change(live: V1Deployment) -> bool:
            if bool(live.spec.paused) == paused:
                return False
            live.spec.paused = paused
            return True

        await self._modify(change)

    async def _has_desired_pod(self) -> bool:
        desired = self.workload.spec.template.spec
        return any(
            not pod_spec_differs(pod.spec, desired, False) for pod in await self.pods()
        )

    async def wait_for_node_rollout(self) -> None:
        await poll_until(
            self._has_desired_pod,
            timeout=config.NODE_ROLLOUT_TIMEOUT,
            message=f"No pod of node '{self.name}' matches the desired spec",
        )

    async def progress_node_changes(self) -> None:
        if not await self.is_changed() and await self._has_desired_pod():
            return

        self.logger.info("Rolling out changes of node '%s'", self.name)
        await self.execute_update()
        await self.set_paused(False)
        await self.wait_for_node_rollout()
        await self.set_paused(True)
        await self.refresh_hashes()

    async def _is_member(self) -> bool:
        return await self.gateway.is_node_in_cluster(self.name)

    async def _has_left(self) -> bool:
        return not await self.gateway.is_node_in_cluster(self.name)


def is_rollout_unfinished(statefulset: V1StatefulSet) -> bool:
    """
    Check whether some pods of ``statefulset`` still run an older revision,
    either because the partition was not lowered to 0 yet or because the
    StatefulSet controller has not caught up.
    """
    strategy = statefulset.spec.update_strategy
    if strategy is not None and strategy.rolling_update is not None:
        if (strategy.rolling_update.partition or 0) > 0:
            return True
    status = statefulset.status
    if status is None:
        return False
    if (status.updated_replicas or 0) < (status.replicas or 0):
        return True
    return bool(
        status.update_revision
        and status.current_revision
        and status.update_revision != status.current_revision
    )


class ReplicatedNode(ManagedNode):
    """
    Master and client nodes backed by a StatefulSet with ``nodeCount``
    replicas.

    Template changes are rolled out one pod at a time, from the highest
    ordinal down, by lowering the partition of the rolling update strategy.
    """

    status_key = "statefulSetName"

    async def _read_workload(self, apps: AppsV1Api) -> V1StatefulSet:
        return await apps.read_namespaced_stateful_set(
            namespace=self.namespace, name=self.name
        )

    async def _create_workload(self, apps: AppsV1Api) -> V1StatefulSet:
        return await apps.create_namespaced_stateful_set(
            namespace=self.namespace, body=self.workload
        )

    async def _replace_workload(
        self, apps: AppsV1Api, body: V1StatefulSet
    ) -> V1StatefulSet:
        return await apps.replace_namespaced_stateful_set(
            namespace=self.namespace, name=self.name, body=body
        )

    def _delete_api(self, apps: AppsV1Api) -> Callable[..., Any]:
        return apps.delete_namespaced_stateful_set

    async def create(self) -> None:
        try:
            async with GlobalApiClient() as api_client:
                await self._create_workload(AppsV1Api(api_client))
        except ApiException as e:
            if e.status != 409:
                raise
            await self.scale()
            return

        self.logger.info("Created statefulset '%s'", self.name)
        await self.refresh_hashes()

    async def scale(self) -> None:
        live = await self._read()
        if live is not None and live.spec.replicas != self.replicas:
            self.logger.info(
                "Scaling statefulset '%s' from %s to %d replicas",
                self.name,
                live.spec.replicas,
                self.replicas,
            )
            await self.set_replica_count(self.replicas)

    async def replica_count(self) -> int:
        live = await self._read()
        if live is None or live.status is None:
            return 0
        return live.status.replicas or 0

    async def partition(self) -> int:
        live = await self._read()
        strategy = live.spec.update_strategy if live else None
        if strategy is None or strategy.rolling_update is None:
            return 0
        return strategy.rolling_update.partition or 0

    async def set_partition(self, partition: int) -> None:
        def change(live: V1StatefulSet) -> bool:
            strategy = live.spec.update_strategy
            if strategy is None:
                strategy = live.spec.update_strategy = V1StatefulSetUpdateStrategy(
                    type="RollingUpdate"
                )
            if strategy.rolling_update is None:
                strategy.rolling_update = V1RollingUpdateStatefulSetStrategy()
            if strategy.rolling_update.partition == partition:
                return False
            strategy.rolling_update.partition = partition
            return True

        await self._modify(change)

    async def progress_node_changes(self) -> None:
        live = await self._read()
        if live is None:
            return
        changed = pod_spec_differs(
            live.spec.template.spec, self.workload.spec.template.spec, True
        )
        if not changed and not is_rollout_unfinished(live):
            return

        if changed:
            self.logger.info("Rolling out changes of statefulset '%s'", self.name)
            replicas = await self.replica_count()
            # Freeze all pods before the template changes.
            try:
                await self.set_partition(replicas)
            except ApiException as e:
                self.logger.error(
                    "Unable to set the partition of '%s': %s", self.name, e.reason
                )
            await self.execute_update()
        else:
            self.logger.info("Resuming the rollout of statefulset '%s'", self.name)

        for index in range(await self.partition(), 0, -1):
            await self.wait_for_node_rejoin_cluster()
            await self.set_partition(index - 1)
            await self.wait_for_node_leave_cluster()

        await self.wait_for_node_rejoin_cluster()
        await self.refresh_hashes()

    async def _is_member(self) -> bool:
        return self.replicas <= await self.gateway.get_cluster_node_count()

    async def _has_left(self) -> bool:
        return self.replicas > await self.gateway.get_cluster_node_count()


def get_persistent_volume_claim(
    name: str,
    storage: Mapping[str, Any],
    owner_references: Optional[List[V1OwnerReference]],
) -> V1PersistentVolumeClaim:
    return V1PersistentVolumeClaim(
        metadata=V1ObjectMeta(name=name, owner_references=owner_references),
        spec=V1PersistentVolumeClaimSpec(
            access_modes=["ReadWriteOnce"],
            resources=V1ResourceRequirements(
                requests={
                    "storage": format_bitmath(convert_to_bytes(storage["size"]))
                }
            ),
            storage_class_name=storage.get("storageClassName"),
        ),
    )


def get_deployment(
    namespace: str,
    cluster_name: str,
    node_name: str,
    cluster_spec: Mapping[str, Any],
    node_spec: Mapping[str, Any],
    owner_references: Optional[List[V1OwnerReference]],
) -> V1Deployment:
    roles = node_spec.get("roles") or []
    return V1Deployment(
        metadata=V1ObjectMeta(
            name=node_name,
            namespace=namespace,
            labels=get_node_labels(cluster_name, node_name, roles),
            owner_references=owner_references,
        ),
        spec=V1DeploymentSpec(
            paused=False,
            progress_deadline_seconds=DEPLOYMENT_PROGRESS_DEADLINE_SECONDS,
            replicas=1,
            selector=V1LabelSelector(
                match_labels=get_selector_labels(cluster_name, node_name)
            ),
            strategy=V1DeploymentStrategy(type="Recreate"),
            template=get_pod_template(
                cluster_name, node_name, cluster_spec, node_spec
            ),
        ),
    )


def get_statefulset(
    namespace: str,
    cluster_name: str,
    node_name: str,
    cluster_spec: Mapping[str, Any],
    node_spec: Mapping[str, Any],
    owner_references: Optional[List[V1OwnerReference]],
) -> V1StatefulSet:
    roles = node_spec.get("roles") or []
    storage = node_spec.get("storage")
    persistent = uses_persistent_storage(storage)
    template: V1PodTemplateSpec = get_pod_template(
        cluster_name,
        node_name,
        cluster_spec,
        node_spec,
        include_storage=not persistent,
    )
    # Ordered startup must not wait for a formed cluster.
    for container in template.spec.containers:
        container.readiness_probe = None

    claims = None
    if persistent:
        claims = [
            get_persistent_volume_claim(VOLUME_STORAGE, storage, owner_references)
        ]
    return V1StatefulSet(
        metadata=V1ObjectMeta(
            name=node_name,
            namespace=namespace,
            labels=get_node_labels(cluster_name, node_name, roles),
            owner_references=owner_references,
        ),
        spec=V1StatefulSetSpec(
            pod_management_policy="OrderedReady",
            replicas=node_spec.get("nodeCount", 1),
            selector=V1LabelSelector(
                match_labels=get_selector_labels(cluster_name, node_name)
            ),
            service_name=f"{cluster_name}-cluster",
            template=template,
            update_strategy=V1StatefulSetUpdateStrategy(
                type="RollingUpdate",
                rolling_update=V1RollingUpdateStatefulSetStrategy(partition=0),
            ),
            volume_claim_templates=claims,
        ),
    )
