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

import json
import logging
import os
import ssl
import tempfile
from typing import Any, Dict, List, Optional, Tuple, Union

import aiohttp
from kubernetes_asyncio.client import CoreV1Api

from elastic.operator import __version__
from elastic.operator.config import config
from elastic.operator.constants import (
    SECRET_ADMIN_CA,
    SECRET_ADMIN_CERT,
    SECRET_ADMIN_KEY,
)
from elastic.operator.exceptions import GatewayError, OperatorError
from elastic.operator.utils.k8s_api_client import GlobalApiClient
from elastic.operator.utils.kubeapi import get_secret_data
from elastic.operator.utils.typing import ClusterHealth
from elastic.operator.utils.version import lowest_version

SETTING_ALLOCATION_ENABLE = "cluster.routing.allocation.enable"
SETTING_THRESHOLD_ENABLED = "cluster.routing.allocation.disk.threshold_enabled"
SETTING_WATERMARK_LOW = "cluster.routing.allocation.disk.watermark.low"
SETTING_WATERMARK_HIGH = "cluster.routing.allocation.disk.watermark.high"
SETTING_WATERMARK_FLOOD = "cluster.routing.allocation.disk.watermark.flood_stage"
SETTING_MIN_MASTER_NODES = "discovery.zen.minimum_master_nodes"
SETTING_NUMBER_OF_REPLICAS = "index.number_of_replicas"
SETTING_READ_ONLY_ALLOW_DELETE = "index.blocks.read_only_allow_delete"

#: The index templates managed by the operator.
TEMPLATE_PATTERN = "common.*"

#: A watermark is either a percentage or an absolute byte quantity.
Watermark = Union[float, str, None]


def parse_watermark(value: Optional[str]) -> Watermark:
    """
    Convert a disk watermark setting into a percentage (``float``) or an
    absolute byte quantity (``str`` without the trailing ``b``).

    >>> parse_watermark("85%")
    85.0
    >>> parse_watermark("500mb")
    '500m'
    """
    if value is None:
        return None
    value = str(value)
    if value.endswith("%"):
        return float(value[:-1])
    if value.endswith("b"):
        return value[:-1]
    return value


class ElasticsearchGateway:
    """
    An async client for the administrative HTTP API of an Elasticsearch
    cluster.

    Use it as an async context manager to ensure the underlying
    :class:`aiohttp.ClientSession` is closed. Every failed request raises a
    :exc:`~elastic.operator.exceptions.GatewayError`.

    :param base_url: The scheme, host and port of the cluster, e.g.
        ``https://elasticsearch.logging.svc:9200``.
    :param logger:
    :param ssl_context: The TLS configuration for the connection. ``False``
        disables certificate validation.
    """

    def __init__(
        self,
        base_url: str,
        logger: logging.Logger,
        *,
        ssl_context: Union[ssl.SSLContext, bool] = True,
    ):
        self.base_url = base_url.rstrip("/")
        self.logger = logger
        self._ssl = ssl_context
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "ElasticsearchGateway":
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "User-Agent": f"elasticsearch-operator/{__version__}",
                    "Content-Type": "application/json",
                },
                timeout=aiohttp.ClientTimeout(
                    total=config.ELASTICSEARCH_REQUEST_TIMEOUT
                ),
                raise_for_status=False,
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        body: Any = None,
    ) -> Any:
        session = self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(
                method,
                url,
                params=params,
                data=json.dumps(body) if body is not None else None,
                ssl=self._ssl,
            ) as response:
                text = await response.text()
                if response.status >= 300:
                    raise GatewayError(
                        f"{method} {path} failed", status=response.status, body=text
                    )
        except aiohttp.ClientError as e:
            raise GatewayError(f"{method} {path} failed: {e}") from e
        try:
            return json.loads(text) if text else {}
        except ValueError as e:
            raise GatewayError(
                f"{method} {path} returned invalid JSON",
                status=response.status,
                body=text,
            ) from e

    async def _acknowledged(self, method: str, path: str, body: Any, what: str) -> bool:
        response = await self._request(method, path, body=body)
        acknowledged = bool(response.get("acknowledged", False))
        if not acknowledged:
            self.logger.error("Elasticsearch did not acknowledge %s.", what)
        return acknowledged

    # Cluster health

    async def get_cluster_health(self) -> ClusterHealth:
        data = await self._request("GET", "/_cluster/health")
        return {
            "status": data.get("status", ""),
            "numNodes": int(data.get("number_of_nodes", 0)),
            "numDataNodes": int(data.get("number_of_data_nodes", 0)),
            "activePrimaryShards": int(data.get("active_primary_shards", 0)),
            "activeShards": int(data.get("active_shards", 0)),
            "relocatingShards": int(data.get("relocating_shards", 0)),
            "initializingShards": int(data.get("initializing_shards", 0)),
            "unassignedShards": int(data.get("unassigned_shards", 0)),
            "pendingTasks": int(data.get("number_of_pending_tasks", 0)),
        }

    async def get_cluster_health_status(self) -> str:
        data = await self._request("GET", "/_cluster/health")
        return data.get("status", "")

    async def get_cluster_node_count(self) -> int:
        data = await self._request("GET", "/_cluster/health")
        return int(data.get("number_of_nodes", 0))

    # Cluster settings

    async def get_cluster_settings(self) -> Dict[str, Dict[str, Any]]:
        """
        Return the ``defaults``, ``persistent`` and ``transient`` cluster
        settings with flat keys.
        """
        return await self._request(
            "GET",
            "/_cluster/settings",
            params={"include_defaults": "true", "flat_settings": "true"},
        )

    async def get_cluster_setting(self, key: str) -> Any:
        """
        Return the effective value of a cluster setting. Transient settings
        take precedence over persistent ones, which take precedence over the
        defaults.
        """
        settings = await self.get_cluster_settings()
        return effective_setting(settings, key)

    async def get_shard_allocation(self) -> str:
        value = await self.get_cluster_setting(SETTING_ALLOCATION_ENABLE)
        return value if isinstance(value, str) else ""

    async def set_shard_allocation(self, mode: str) -> bool:
        return await self._acknowledged(
            "PUT",
            "/_cluster/settings",
            {"persistent": {SETTING_ALLOCATION_ENABLE: mode}},
            f"shard allocation '{mode}'",
        )

    async def clear_transient_shard_allocation(self) -> bool:
        return await self._acknowledged(
            "PUT",
            "/_cluster/settings",
            {"transient": {SETTING_ALLOCATION_ENABLE: None}},
            "clearing the transient shard allocation",
        )

    async def get_threshold_enabled(self) -> bool:
        value = await self.get_cluster_setting(SETTING_THRESHOLD_ENABLED)
        return str(value).lower() == "true"

    async def get_disk_watermarks(self) -> Tuple[Watermark, Watermark, Watermark]:
        """
        Return the low, high and flood stage disk watermarks.
        """
        settings = await self.get_cluster_settings()
        return (
            parse_watermark(effective_setting(settings, SETTING_WATERMARK_LOW)),
            parse_watermark(effective_setting(settings, SETTING_WATERMARK_HIGH)),
            parse_watermark(effective_setting(settings, SETTING_WATERMARK_FLOOD)),
        )

    async def get_min_master_nodes(self) -> int:
        settings = await self.get_cluster_settings()
        value = (settings.get("persistent") or {}).get(SETTING_MIN_MASTER_NODES)
        return int(value) if value is not None else 0

    async def set_min_master_nodes(self, count: int) -> bool:
        return await self._acknowledged(
            "PUT",
            "/_cluster/settings",
            {"persistent": {SETTING_MIN_MASTER_NODES: count}},
            f"minimum master nodes {count}",
        )

    # Nodes

    async def is_node_in_cluster(self, name: str) -> bool:
        data = await self._request("GET", "/_nodes")
        return any(
            node.get("name") == name for node in (data.get("nodes") or {}).values()
        )

    async def get_cluster_node_versions(self) -> List[str]:
        data = await self._request("GET", "/_cluster/stats")
        return list((data.get("nodes") or {}).get("versions") or [])

    async def get_lowest_cluster_version(self) -> Optional[str]:
        return lowest_version(await self.get_cluster_node_versions())

    async def get_node_disk_usage(self, name: str) -> Tuple[str, float]:
        """
        Return the used disk space in bytes and in percent of the node
        ``name``. If the node is unknown, ``("", -1.0)`` is returned.
        """
        data = await self._request("GET", "/_nodes/stats")
        for stats in (data.get("nodes") or {}).values():
            if stats.get("name") != name:
                continue
            fs = (stats.get("fs") or {}).get("total") or {}
            total = float(fs.get("total_in_bytes", 0))
            available = float(fs.get("available_in_bytes", 0))
            if total <= 0:
                break
            return str(int(total - available)), (total - available) / total * 100.0
        return "", -1.0

    async def do_synchronized_flush(self) -> bool:
        try:
            data = await self._request("POST", "/_flush/synced")
        except GatewayError as e:
            # Elasticsearch answers with 409 CONFLICT when some shards failed
            if e.status != 409:
                raise
            try:
                data = json.loads(e.body)
            except ValueError:
                return False
        failed = ((data or {}).get("_shards") or {}).get("failed", 0)
        return int(failed) == 0

    # Indices

    async def list_all_indices(self, pattern: str = "") -> List[Dict[str, Any]]:
        path = f"/_cat/indices/{pattern}" if pattern else "/_cat/indices"
        return await self._request("GET", path, params={"format": "json"})

    async def get_index_settings(self, name: str) -> Dict[str, Any]:
        data = await self._request(
            "GET", f"/{name}/_settings", params={"flat_settings": "true"}
        )
        return (data.get(name) or {}).get("settings") or {}

    async def update_index_settings(self, name: str, settings: Dict[str, Any]) -> bool:
        return await self._acknowledged(
            "PUT", f"/{name}/_settings", settings, f"settings of index '{name}'"
        )

    async def get_index_replica_counts(self) -> Dict[str, int]:
        data = await self._request(
            "GET",
            "/_settings",
            params={"filter_path": "*.settings.index.number_of_replicas"},
        )
        counts = {}
        for index, value in (data or {}).items():
            replicas = ((value.get("settings") or {}).get("index") or {}).get(
                "number_of_replicas"
            )
            if replicas is not None:
                counts[index] = int(replicas)
        return counts

    async def get_lowest_replica_value(self) -> Optional[int]:
        """
        Return the lowest number of replicas of all indices or ``None`` if the
        cluster has no indices.
        """
        counts = await self.get_index_replica_counts()
        return min(counts.values()) if counts else None

    async def update_replica_count(self, replicas: int) -> None:
        """
        Set the number of replicas on the operator's index templates and on
        every index where it differs.
        """
        templates = await self._request("GET", f"/_template/{TEMPLATE_PATTERN}")
        for name, template in (templates or {}).items():
            index_settings = (template.setdefault("settings", {})).setdefault(
                "index", {}
            )
            if str(index_settings.get("number_of_replicas")) != str(replicas):
                index_settings["number_of_replicas"] = str(replicas)
                await self._acknowledged(
                    "PUT", f"/_template/{name}", template, f"template '{name}'"
                )

        for index, current in (await self.get_index_replica_counts()).items():
            if current != replicas:
                await self.update_index_settings(
                    index, {SETTING_NUMBER_OF_REPLICAS: str(replicas)}
                )


def effective_setting(settings: Dict[str, Dict[str, Any]], key: str) -> Any:
    value = None
    for section in ("defaults", "persistent", "transient"):
        section_value = (settings.get(section) or {}).get(key)
        if section_value is not None:
            value = section_value
    return value


def build_ssl_context(secret: Dict[str, str]) -> Union[ssl.SSLContext, bool]:
    """
    Build the TLS configuration to authenticate as the operator's admin user
    from the decoded data of the cluster secret.
    """
    if config.ELASTICSEARCH_INSECURE:
        return False
    context = ssl.create_default_context(cadata=secret.get(SECRET_ADMIN_CA) or None)
    cert, key = secret.get(SECRET_ADMIN_CERT), secret.get(SECRET_ADMIN_KEY)
    if cert and key:
        # load_cert_chain only accepts file paths
        with tempfile.TemporaryDirectory() as directory:
            cert_path = os.path.join(directory, "admin-cert")
            key_path = os.path.join(directory, "admin-key")
            with open(cert_path, "w") as f:
                f.write(cert)
            with open(key_path, "w") as f:
                f.write(key)
            context.load_cert_chain(cert_path, key_path)
    return context


async def get_gateway(
    namespace: str, name: str, logger: logging.Logger
) -> ElasticsearchGateway:
    """
    Create a gateway for the cluster ``name`` which authenticates with the
    admin certificate stored in the secret of the same name.
    """
    async with GlobalApiClient() as api_client:
        core = CoreV1Api(api_client)
        secret = await get_secret_data(core, namespace, name)
    if secret is None:
        raise OperatorError(
            f"Secret '{namespace}/{name}' with the admin certificates is missing."
        )
    return ElasticsearchGateway(
        f"https://{name}.{namespace}.svc:{config.ELASTICSEARCH_PORT}",
        logger,
        ssl_context=build_ssl_context(secret),
    )
