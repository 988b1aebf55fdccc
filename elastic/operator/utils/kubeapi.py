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

import logging
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from kubernetes_asyncio.client import (
    ApiException,
    CoreV1Api,
    CustomObjectsApi,
    V1Pod,
)

from elastic.operator.config import config
from elastic.operator.constants import (
    API_GROUP,
    API_VERSION,
    COMPONENT_ELASTICSEARCH,
    LABEL_CLUSTER_NAME,
    LABEL_COMPONENT,
    RESOURCE_ELASTICSEARCH,
)
from elastic.operator.utils.formatting import b64decode
from elastic.operator.utils.k8s_api_client import GlobalApiClient
from elastic.operator.utils.typing import K8sModel

T = TypeVar("T")


async def call_kubeapi(
    method: Callable[..., Awaitable],
    logger: logging.Logger,
    *,
    continue_on_absence=False,
    continue_on_conflict=False,
    namespace: Optional[str] = None,
    body: Optional[K8sModel] = None,
    **kwargs,
) -> Optional[Awaitable[K8sModel]]:
    """
    Await a Kubernetes API method and return its result.

    If the API fails with an HTTP 404 NOT FOUND error and
    ``continue_on_absence`` is set to ``True`` a message is logged and
    ``call_kubeapi`` returns ``None``.

    If the API fails with an HTTP 409 CONFLICT error and
    ``continue_on_conflict`` is set to ``True`` a message is logged and
    ``call_kubeapi`` returns ``None``.

    In case of any other error or when either option is set to ``False``
    (default) the :exc:`kubernetes_asyncio.client.exceptions.ApiException` is
    re-raised.

    :param method: A Kubernetes API function which will be called with
        ``namespace`` and ``body``, if provided, and all other ``kwargs``. The
        function will also be awaited and the response returned.
    :param logger:
    :param continue_on_absence: When ``True``, log instead of raising on HTTP
        404 responses.
    :param continue_on_conflict: When ``True``, log instead of raising on HTTP
        409 responses.
    :param namespace: The namespace passed to namespaced K8s API endpoints.
    :param body: The body passed to the K8s API endpoints.
    """
    try:
        if namespace is not None:
            kwargs["namespace"] = namespace
        if body is not None:
            kwargs["body"] = body
        return await method(**kwargs)
    except ApiException as e:
        if (
            e.status == 409
            and continue_on_conflict
            or e.status == 404
            and continue_on_absence
        ):
            obj_name = kwargs.get("name") or getattr(
                getattr(body, "metadata", None), "name", "<unknown>"
            )
            cause = "already exists" if e.status == 409 else "doesn't exist"
            logger.info(
                "Failed %s '%s/%s' because it %s. Continuing.",
                "creating" if e.status == 409 else "accessing",
                namespace,
                obj_name,
                cause,
            )
            return None
        else:
            raise


async def retry_on_conflict(
    fn: Callable[[], Awaitable[T]],
    logger: logging.Logger,
    *,
    retries: Optional[int] = None,
) -> T:
    """
    Await ``fn()`` and retry it when the Kubernetes API rejects the write with
    HTTP 409 CONFLICT because the object was modified concurrently.

    ``fn`` must re-read the object it modifies on every call so that each
    attempt applies its change on top of the latest ``resourceVersion``.

    :param fn: A coroutine function taking no arguments.
    :param logger:
    :param retries: The maximum number of attempts. Defaults to
        :attr:`~elastic.operator.config.Config.STATUS_UPDATE_RETRIES`.
    """
    attempts = retries or config.STATUS_UPDATE_RETRIES
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except ApiException as e:
            if e.status != 409 or attempt == attempts:
                raise
            logger.info(
                "Conflict while updating the resource. Retrying (%d/%d).",
                attempt,
                attempts,
            )
    raise AssertionError("unreachable")


async def get_elasticsearch_resource(namespace: str, name: str) -> dict:
    async with GlobalApiClient() as api_client:
        coapi = CustomObjectsApi(api_client)
        return await coapi.get_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            plural=RESOURCE_ELASTICSEARCH,
            namespace=namespace,
            name=name,
        )


async def get_secret_data(
    core: CoreV1Api, namespace: str, name: str
) -> Optional[Dict[str, str]]:
    """
    Return the base64 decoded data of the secret ``name`` or ``None`` if the
    secret does not exist.
    """
    try:
        secret = await core.read_namespaced_secret(namespace=namespace, name=name)
    except ApiException as e:
        if e.status == 404:
            return None
        raise
    return {key: b64decode(value) for key, value in (secret.data or {}).items()}


async def get_configmap_data(
    core: CoreV1Api, namespace: str, name: str
) -> Optional[Dict[str, str]]:
    """
    Return the data of the configmap ``name`` or ``None`` if the configmap
    does not exist.
    """
    try:
        cm = await core.read_namespaced_config_map(namespace=namespace, name=name)
    except ApiException as e:
        if e.status == 404:
            return None
        raise
    return dict(cm.data or {})


async def list_cluster_pods(
    core: CoreV1Api,
    namespace: str,
    cluster_name: str,
    extra_labels: Optional[Dict[str, str]] = None,
) -> List[V1Pod]:
    labels = {
        LABEL_COMPONENT: COMPONENT_ELASTICSEARCH,
        LABEL_CLUSTER_NAME: cluster_name,
        **(extra_labels or {}),
    }
    pods = await core.list_namespaced_pod(
        namespace=namespace,
        label_selector=",".join(f"{k}={v}" for k, v in labels.items()),
    )
    return pods.items
