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
from typing import Any, Optional, Tuple, Union

from kopf import ConnectionInfo
from kubernetes_asyncio.client import Configuration
from kubernetes_asyncio.config import load_incluster_config, load_kube_config

from elastic.operator.config import config


def split_authorization(
    header: Optional[str],
) -> Tuple[Optional[str], Optional[str]]:
    """
    Split an ``Authorization`` header value into scheme and token.

    >>> split_authorization("Bearer abc")
    ('Bearer', 'abc')
    >>> split_authorization("abc")
    (None, 'abc')
    """
    if not header:
        return None, None
    parts = header.split(" ", 1)
    if len(parts) == 1:
        return None, parts[0]
    return parts[0], parts[1]


async def login_via_kubernetes_asyncio(
    logger: Union[logging.Logger, logging.LoggerAdapter], **kwargs: Any
) -> ConnectionInfo:
    """
    Authenticate kopf with the credentials ``kubernetes_asyncio`` resolves.

    :attr:`~elastic.operator.config.Config.KUBECONFIG` is used when set,
    otherwise the in-cluster service account.
    """
    if config.KUBECONFIG:
        logger.info("Authenticating with KUBECONFIG='%s'", config.KUBECONFIG)
        await load_kube_config(config_file=config.KUBECONFIG)
    else:
        logger.info("Authenticating with in-cluster config")
        load_incluster_config()

    k8s_config = Configuration.get_default_copy()
    # Auth providers replace this method, so it returns fresh tokens as well.
    scheme, token = split_authorization(
        k8s_config.get_api_key_with_prefix("BearerToken")
    )
    return ConnectionInfo(
        server=k8s_config.host,
        ca_path=k8s_config.ssl_ca_cert,
        insecure=not k8s_config.verify_ssl,
        username=k8s_config.username or None,
        password=k8s_config.password or None,
        scheme=scheme,
        token=token,
        certificate_path=k8s_config.cert_file,
        private_key_path=k8s_config.key_file,
        priority=30,
    )
