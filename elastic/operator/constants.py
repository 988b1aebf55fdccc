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

import enum

API_GROUP = "logging.openshift.io"
API_VERSION = "v1"
RESOURCE_ELASTICSEARCH = "elasticsearches"
KIND_ELASTICSEARCH = "Elasticsearch"

LABEL_COMPONENT = "component"
LABEL_CLUSTER_NAME = "cluster-name"
LABEL_NODE_NAME = "node-name"
LABEL_ROLE_CLIENT = "es-node-client"
LABEL_ROLE_DATA = "es-node-data"
LABEL_ROLE_MASTER = "es-node-master"
COMPONENT_ELASTICSEARCH = "elasticsearch"

KOPF_STATE_STORE_PREFIX = f"operator.{API_GROUP}"

CLUSTER_RECONCILE_ID = "cluster_reconcile"

ELASTICSEARCH_CONTAINER_NAME = "elasticsearch"
ELASTICSEARCH_CONFIG_PATH = "/usr/share/java/elasticsearch/config"
ELASTICSEARCH_CERTS_PATH = "/etc/openshift/elasticsearch/secret"
ELASTICSEARCH_DATA_PATH = "/elasticsearch/persistent"

#: The annotation the deployment controller sets once a rollout was observed.
DEPLOYMENT_REVISION_ANNOTATION = "deployment.kubernetes.io/revision"
DEPLOYMENT_PROGRESS_DEADLINE_SECONDS = 1800

#: Keys in the cluster secret used for the admin client certificate.
SECRET_ADMIN_CERT = "admin-cert"
SECRET_ADMIN_KEY = "admin-key"
SECRET_ADMIN_CA = "admin-ca"

#: Configmap keys which do not require a restart when they change.
CONFIGMAP_HASH_IGNORED_KEYS = ("index_settings",)

SECURITY_INDEX = ".security"

MAX_MASTER_COUNT = 3
#: Clusters below this version cannot perform a rolling per-node update.
MIN_ROLLING_UPDATE_VERSION = "6.0"
UUID_LENGTH = 8

#: Cluster health states in which disruptive operations are permitted.
DESIRED_CLUSTER_HEALTH = ("green", "yellow")
CLUSTER_HEALTH_UNKNOWN = "cluster health unknown"

MANAGEMENT_STATE_UNMANAGED = "Unmanaged"


class NodeRole(str, enum.Enum):
    CLIENT = "client"
    DATA = "data"
    MASTER = "master"


class RedundancyPolicy(str, enum.Enum):
    ZERO = "ZeroRedundancy"
    SINGLE = "SingleRedundancy"
    MULTIPLE = "MultipleRedundancy"
    FULL = "FullRedundancy"


class ShardAllocation(str, enum.Enum):
    NONE = "none"
    PRIMARIES = "primaries"
    ALL = "all"
    UNKNOWN = "unknown"


class ConditionStatus(str, enum.Enum):
    TRUE = "True"
    FALSE = "False"
    #: The flag has never been set or was cleared.
    UNSET = ""


class UpgradePhase(str, enum.Enum):
    NONE = ""
    CONTROLLER_UPDATED = "controllerUpdated"
    PREPARATION_COMPLETE = "preparationComplete"
    NODE_RESTARTING = "nodeRestarting"
    RECOVERING_DATA = "recoveringData"


class ClusterConditionType(str, enum.Enum):
    UPDATING_SETTINGS = "UpdatingSettings"
    SCALING_UP = "ScalingUp"
    SCALING_DOWN = "ScalingDown"
    RESTARTING = "Restarting"
    RECOVERING = "Recovering"
    UPDATING_ES_SETTINGS = "UpdatingESSettings"
    INVALID_MASTERS = "InvalidMasters"
    INVALID_DATA = "InvalidData"
    INVALID_REDUNDANCY = "InvalidRedundancy"
    INVALID_UUID = "InvalidUUID"
    INVALID_INDEX_MANAGEMENT = "InvalidIndexManagement"
    DEGRADED = "Degraded"
    # Per node conditions
    UNSCHEDULABLE = "Unschedulable"
    CONTAINER_WAITING = "ElasticsearchContainerWaiting"
    CONTAINER_TERMINATED = "ElasticsearchContainerTerminated"


class PodState(str, enum.Enum):
    READY = "ready"
    NOT_READY = "notReady"
    FAILED = "failed"
