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
import time
from datetime import datetime, timezone
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Info
from prometheus_client.core import GaugeMetricFamily

from elastic.operator import __version__
from elastic.operator.utils.k8s_api_client import GlobalApiClient

i = Info("svc", "Service Info")
i.info(
    {
        "name": "elasticsearch-operator",
        "version": __version__,
        "started": datetime.now(timezone.utc).isoformat(),
    }
)

RESTARTS = Counter(
    "es_operator_restarts",
    "Number of restart campaigns that completed a reconciliation step.",
    labelnames=["kind"],
)

CLUSTER_METRICS: Dict[str, dict] = {}
LAST_SEEN_THRESHOLD = 300


class PrometheusClusterStatus(enum.Enum):
    GREEN = 0
    YELLOW = 1
    RED = 2
    UNREACHABLE = 3


def status_for_health(health: Optional[str]) -> PrometheusClusterStatus:
    try:
        return PrometheusClusterStatus[(health or "").upper()]
    except KeyError:
        return PrometheusClusterStatus.UNREACHABLE


def report_cluster_status(
    namespace: str,
    cluster_name: str,
    status: PrometheusClusterStatus,
    last_reported: Optional[int] = None,
):
    CLUSTER_METRICS[f"{namespace}/{cluster_name}"] = {
        "namespace": namespace,
        "cluster_name": cluster_name,
        "status": status,
        "last_reported": last_reported if last_reported else int(time.time()),
    }


def forget_cluster(namespace: str, cluster_name: str) -> None:
    CLUSTER_METRICS.pop(f"{namespace}/{cluster_name}", None)


def report_restart(kind: str) -> None:
    RESTARTS.labels(kind=kind).inc()


class ClusterCollector:
    def collect(self):
        now = time.time()
        cluster_health = GaugeMetricFamily(
            "es_operator_cluster_health",
            "0->GREEN, 1->YELLOW, 2->RED, 3->UNREACHABLE",
            labels=["cluster_name", "exported_namespace"],
        )
        for metrics in CLUSTER_METRICS.values():
            if now - metrics["last_reported"] < LAST_SEEN_THRESHOLD:
                cluster_health.add_metric(
                    [metrics["cluster_name"], metrics["namespace"]],
                    metrics["status"].value,
                )
        yield cluster_health

        k8s_api_sessions = GaugeMetricFamily(
            "es_operator_open_k8s_api_sessions",
            "Number of sessions open to the k8s api",
        )
        k8s_api_sessions.add_metric([], GlobalApiClient.get_instance_count())
        yield k8s_api_sessions


REGISTRY.register(ClusterCollector())
