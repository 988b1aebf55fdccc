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

import hashlib
from typing import Any, Dict, Iterable, List, Mapping, Optional

from kubernetes_asyncio.client import (
    V1Affinity,
    V1ConfigMapVolumeSource,
    V1Container,
    V1ContainerPort,
    V1EmptyDirVolumeSource,
    V1EnvVar,
    V1EnvVarSource,
    V1LabelSelector,
    V1LabelSelectorRequirement,
    V1ObjectFieldSelector,
    V1ObjectMeta,
    V1OwnerReference,
    V1PersistentVolumeClaimVolumeSource,
    V1PodAffinityTerm,
    V1PodAntiAffinity,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Probe,
    V1ResourceRequirements,
    V1SecretVolumeSource,
    V1TCPSocketAction,
    V1Toleration,
    V1Volume,
    V1VolumeMount,
    V1WeightedPodAffinityTerm,
)

from elastic.operator.constants import (
    API_GROUP,
    API_VERSION,
    COMPONENT_ELASTICSEARCH,
    CONFIGMAP_HASH_IGNORED_KEYS,
    ELASTICSEARCH_CERTS_PATH,
    ELASTICSEARCH_CONFIG_PATH,
    ELASTICSEARCH_CONTAINER_NAME,
    ELASTICSEARCH_DATA_PATH,
    KIND_ELASTICSEARCH,
    LABEL_CLUSTER_NAME,
    LABEL_COMPONENT,
    LABEL_NODE_NAME,
    LABEL_ROLE_CLIENT,
    LABEL_ROLE_DATA,
    LABEL_ROLE_MASTER,
    NodeRole,
)
from elastic.operator.utils.formatting import parse_quantity
from elastic.operator.utils.typing import LabelType

DEFAULT_IMAGE = "quay.io/openshift/origin-logging-elasticsearch6"

#: Default resources used when neither the node nor the cluster define them.
DEFAULT_RESOURCES = {
    "limits": {"memory": "4Gi"},
    "requests": {"cpu": "100m", "memory": "1Gi"},
}

VOLUME_STORAGE = "elasticsearch-storage"
VOLUME_CONFIG = "elasticsearch-config"
VOLUME_CERTIFICATES = "certificates"

PORT_CLUSTER = 9300
PORT_RESTAPI = 9200


def get_selector_labels(cluster_name: str, node_name: str) -> LabelType:
    return {
        LABEL_COMPONENT: COMPONENT_ELASTICSEARCH,
        LABEL_CLUSTER_NAME: cluster_name,
        LABEL_NODE_NAME: node_name,
    }


def get_node_labels(
    cluster_name: str, node_name: str, roles: Iterable[str]
) -> LabelType:
    roles = set(roles)
    return {
        **get_selector_labels(cluster_name, node_name),
        LABEL_ROLE_CLIENT: str(NodeRole.CLIENT.value in roles).lower(),
        LABEL_ROLE_DATA: str(NodeRole.DATA.value in roles).lower(),
        LABEL_ROLE_MASTER: str(NodeRole.MASTER.value in roles).lower(),
    }


def get_owner_references(name: str, uid: Optional[str]) -> List[V1OwnerReference]:
    if not uid:
        return []
    return [
        V1OwnerReference(
            api_version=f"{API_GROUP}/{API_VERSION}",
            block_owner_deletion=True,
            controller=True,
            kind=KIND_ELASTICSEARCH,
            name=name,
            uid=uid,
        )
    ]


def get_resources(
    common: Optional[Mapping[str, Any]], node: Optional[Mapping[str, Any]]
) -> V1ResourceRequirements:
    """
    Merge the resources of a node spec over the cluster wide resources and
    the defaults. Each ``cpu`` and ``memory`` limit and request is taken from
    the most specific place it is defined in.
    """
    merged: Dict[str, Dict[str, str]] = {}
    for kind in ("limits", "requests"):
        values = dict(DEFAULT_RESOURCES.get(kind, {}))
        for source in (common or {}, node or {}):
            values.update(
                {k: str(v) for k, v in (source.get(kind) or {}).items() if v}
            )
        merged[kind] = values
    return V1ResourceRequirements(limits=merged["limits"], requests=merged["requests"])


def get_tolerations(
    tolerations: Optional[List[Mapping[str, Any]]],
) -> Optional[List[V1Toleration]]:
    if not tolerations:
        return None
    return [
        V1Toleration(
            effect=t.get("effect"),
            key=t.get("key"),
            operator=t.get("operator"),
            toleration_seconds=t.get("tolerationSeconds"),
            value=t.get("value"),
        )
        for t in tolerations
    ]


def get_env(
    cluster_name: str, node_name: str, roles: Iterable[str], memory: str
) -> List[V1EnvVar]:
    roles = set(roles)
    return [
        V1EnvVar(name="DC_NAME", value=node_name),
        V1EnvVar(
            name="NAMESPACE",
            value_from=V1EnvVarSource(
                field_ref=V1ObjectFieldSelector(field_path="metadata.namespace")
            ),
        ),
        V1EnvVar(
            name="POD_IP",
            value_from=V1EnvVarSource(
                field_ref=V1ObjectFieldSelector(field_path="status.podIP")
            ),
        ),
        V1EnvVar(name="KUBERNETES_TRUST_CERT", value="true"),
        V1EnvVar(name="SERVICE_DNS", value=f"{cluster_name}-cluster"),
        V1EnvVar(name="CLUSTER_NAME", value=cluster_name),
        V1EnvVar(name="INSTANCE_RAM", value=memory),
        V1EnvVar(
            name="HEAP_DUMP_LOCATION", value=f"{ELASTICSEARCH_DATA_PATH}/hdump.prof"
        ),
        V1EnvVar(name="RECOVER_AFTER_TIME", value="5m"),
        V1EnvVar(name="READINESS_PROBE_TIMEOUT", value="30"),
        V1EnvVar(name="POD_LABEL", value=f"cluster={cluster_name}"),
        V1EnvVar(name="IS_MASTER", value=str(NodeRole.MASTER.value in roles).lower()),
        V1EnvVar(name="HAS_DATA", value=str(NodeRole.DATA.value in roles).lower()),
    ]


def get_volumes(
    cluster_name: str, node_name: str, storage: Optional[Mapping[str, Any]]
) -> List[V1Volume]:
    """
    Return the volumes of a node's pods. The data volume is a PVC named
    ``<cluster>-<node>`` when the storage spec defines a size, otherwise an
    ``emptyDir``.
    """
    if uses_persistent_storage(storage):
        data = V1Volume(
            name=VOLUME_STORAGE,
            persistent_volume_claim=V1PersistentVolumeClaimVolumeSource(
                claim_name=get_claim_name(cluster_name, node_name)
            ),
        )
    else:
        data = V1Volume(name=VOLUME_STORAGE, empty_dir=V1EmptyDirVolumeSource())
    return [
        data,
        V1Volume(
            name=VOLUME_CONFIG,
            config_map=V1ConfigMapVolumeSource(name=cluster_name),
        ),
        V1Volume(
            name=VOLUME_CERTIFICATES,
            secret=V1SecretVolumeSource(secret_name=cluster_name),
        ),
    ]


def uses_persistent_storage(storage: Optional[Mapping[str, Any]]) -> bool:
    return bool(storage and storage.get("size"))


def get_claim_name(cluster_name: str, node_name: str) -> str:
    return f"{cluster_name}-{node_name}"


def get_affinity(roles: Iterable[str]) -> V1Affinity:
    roles = set(roles)
    return V1Affinity(
        pod_anti_affinity=V1PodAntiAffinity(
            preferred_during_scheduling_ignored_during_execution=[
                V1WeightedPodAffinityTerm(
                    weight=100,
                    pod_affinity_term=V1PodAffinityTerm(
                        label_selector=V1LabelSelector(
                            match_expressions=[
                                V1LabelSelectorRequirement(
                                    key=label, operator="In", values=["true"]
                                )
                                for role, label in (
                                    (NodeRole.CLIENT, LABEL_ROLE_CLIENT),
                                    (NodeRole.DATA, LABEL_ROLE_DATA),
                                    (NodeRole.MASTER, LABEL_ROLE_MASTER),
                                )
                                if role.value in roles
                            ]
                        ),
                        topology_key="kubernetes.io/hostname",
                    ),
                )
            ]
        )
    )


def get_pod_template(
    cluster_name: str,
    node_name: str,
    cluster_spec: Mapping[str, Any],
    node_spec: Mapping[str, Any],
    *,
    include_storage: bool = True,
) -> V1PodTemplateSpec:
    """
    Build the desired pod template of an Elasticsearch node.

    :param cluster_name: The name of the ``Elasticsearch`` resource.
    :param node_name: The name of the Deployment or StatefulSet.
    :param cluster_spec: The cluster wide defaults from ``spec.spec``.
    :param node_spec: The entry of ``spec.nodes`` the node is built from.
    :param include_storage: When ``False``, the data volume is left out of
        the pod template because a StatefulSet provides it through a volume
        claim template.
    """
    roles = node_spec.get("roles") or []
    resources = get_resources(
        cluster_spec.get("resources"), node_spec.get("resources")
    )
    volumes = get_volumes(cluster_name, node_name, node_spec.get("storage"))
    if not include_storage:
        volumes = [v for v in volumes if v.name != VOLUME_STORAGE]
    probe = V1Probe(
        tcp_socket=V1TCPSocketAction(port=PORT_CLUSTER),
        timeout_seconds=30,
        initial_delay_seconds=10,
        failure_threshold=15,
    )
    container = V1Container(
        name=ELASTICSEARCH_CONTAINER_NAME,
        image=cluster_spec.get("image") or DEFAULT_IMAGE,
        image_pull_policy="IfNotPresent",
        env=get_env(
            cluster_name, node_name, roles, resources.limits.get("memory", "")
        ),
        ports=[
            V1ContainerPort(
                name="cluster", container_port=PORT_CLUSTER, protocol="TCP"
            ),
            V1ContainerPort(
                name="restapi", container_port=PORT_RESTAPI, protocol="TCP"
            ),
        ],
        readiness_probe=probe,
        resources=resources,
        volume_mounts=[
            V1VolumeMount(name=VOLUME_STORAGE, mount_path=ELASTICSEARCH_DATA_PATH),
            V1VolumeMount(name=VOLUME_CONFIG, mount_path=ELASTICSEARCH_CONFIG_PATH),
            V1VolumeMount(
                name=VOLUME_CERTIFICATES, mount_path=ELASTICSEARCH_CERTS_PATH
            ),
        ],
    )
    node_selector = {
        **(cluster_spec.get("nodeSelector") or {}),
        **(node_spec.get("nodeSelector") or {}),
    }
    return V1PodTemplateSpec(
        metadata=V1ObjectMeta(labels=get_node_labels(cluster_name, node_name, roles)),
        spec=V1PodSpec(
            affinity=get_affinity(roles),
            containers=[container],
            node_selector=node_selector or None,
            service_account_name=cluster_name,
            tolerations=get_tolerations(
                node_spec.get("tolerations") or cluster_spec.get("tolerations")
            ),
            volumes=volumes,
        ),
    )


def _toleration_key(t: V1Toleration) -> tuple:
    return (t.key, t.operator, t.value, t.effect, t.toleration_seconds)


def _volume_source_key(volume: V1Volume) -> tuple:
    return (
        volume.config_map.name if volume.config_map else None,
        volume.secret.secret_name if volume.secret else None,
        volume.persistent_volume_claim.claim_name
        if volume.persistent_volume_claim
        else None,
        volume.empty_dir is not None,
        volume.empty_dir.size_limit if volume.empty_dir else None,
    )


def _contains_volumes(current: List[V1Volume], desired: List[V1Volume]) -> bool:
    current_by_name = {v.name: v for v in current}
    for volume in desired:
        other = current_by_name.get(volume.name)
        if other is None or _volume_source_key(other) != _volume_source_key(volume):
            return False
    return True


def _contains_volume_mounts(
    current: List[V1VolumeMount], desired: List[V1VolumeMount]
) -> bool:
    current_by_name = {m.name: m for m in current}
    for mount in desired:
        other = current_by_name.get(mount.name)
        if other is None or (other.mount_path, bool(other.read_only)) != (
            mount.mount_path,
            bool(mount.read_only),
        ):
            return False
    return True


def _quantity_key(value: Any) -> Any:
    parsed = parse_quantity(value)
    return str(value) if parsed is None else parsed


def _env_source_key(source: Optional[V1EnvVarSource]) -> Optional[tuple]:
    """
    Reduce an env var source to the fields the operator sets. The API server
    fills in defaults, e.g. ``fieldRef.apiVersion``, which are ignored.
    """
    if source is None:
        return None
    if source.field_ref is not None:
        return ("fieldRef", source.field_ref.field_path)
    if source.resource_field_ref is not None:
        ref = source.resource_field_ref
        # An unset divisor is stored as "0" and means 1
        divisor = parse_quantity(ref.divisor) or 1
        return ("resourceFieldRef", ref.container_name or "", ref.resource, divisor)
    if source.config_map_key_ref is not None:
        ref = source.config_map_key_ref
        return ("configMapKeyRef", ref.name, ref.key)
    if source.secret_key_ref is not None:
        ref = source.secret_key_ref
        return ("secretKeyRef", ref.name, ref.key)
    return ()


def _env_map(env: Optional[List[V1EnvVar]]) -> Dict[str, Any]:
    return {e.name: (e.value or "", _env_source_key(e.value_from)) for e in env or []}


def _port_set(ports: Optional[List[V1ContainerPort]]) -> set:
    return {(p.name, p.container_port, p.protocol or "TCP") for p in ports or []}


def _resource_map(resources: Optional[V1ResourceRequirements]) -> Dict[str, Any]:
    if resources is None:
        return {"limits": {}, "requests": {}}
    return {
        "limits": {k: _quantity_key(v) for k, v in (resources.limits or {}).items()},
        "requests": {
            k: _quantity_key(v) for k, v in (resources.requests or {}).items()
        },
    }


def pod_spec_differs(
    current: V1PodSpec, desired: V1PodSpec, strict_tolerations: bool
) -> bool:
    """
    Compare a live pod spec with the desired one.

    Fields Kubernetes adds on its own, such as service account token mounts or
    default modes of volumes, do not count as a difference.

    :param current: The pod spec of a workload's template or a running pod.
    :param desired: The pod spec built by the operator.
    :param strict_tolerations: When ``True`` the tolerations need to match
        exactly. When comparing against running pods use ``False``: the
        desired tolerations then only need to be contained in the pod's.
    """
    if len(current.containers or []) != len(desired.containers or []):
        return True
    if (current.node_selector or {}) != (desired.node_selector or {}):
        return True
    if not _contains_volumes(current.volumes or [], desired.volumes or []):
        return True

    current_tolerations = {_toleration_key(t) for t in current.tolerations or []}
    desired_tolerations = {_toleration_key(t) for t in desired.tolerations or []}
    if strict_tolerations:
        if current_tolerations != desired_tolerations:
            return True
    elif not desired_tolerations.issubset(current_tolerations):
        return True

    desired_containers = {c.name: c for c in desired.containers or []}
    for container in current.containers or []:
        other = desired_containers.get(container.name)
        if other is None:
            return True
        if not _contains_volume_mounts(
            container.volume_mounts or [], other.volume_mounts or []
        ):
            return True
        if container.image != other.image:
            return True
        if _env_map(container.env) != _env_map(other.env):
            return True
        if (container.args or []) != (other.args or []):
            return True
        if _port_set(container.ports) != _port_set(other.ports):
            return True
        if _resource_map(container.resources) != _resource_map(other.resources):
            return True
    return False


def hash_data(
    data: Optional[Mapping[str, str]], ignored_keys: Iterable[str] = ()
) -> str:
    """
    Return a sha256 digest over the sorted keys and values of ``data`` or an
    empty string when there is no data.
    """
    if data is None:
        return ""
    ignored = set(ignored_keys)
    digest = hashlib.sha256()
    for key in sorted(data):
        if key in ignored:
            continue
        digest.update(key.encode("utf-8"))
        digest.update(b"\0")
        digest.update((data[key] or "").encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()


def hash_configmap_data(data: Optional[Mapping[str, str]]) -> str:
    return hash_data(data, CONFIGMAP_HASH_IGNORED_KEYS)
