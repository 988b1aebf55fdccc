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
import os
from typing import Optional

from kubernetes_asyncio.config.kube_config import ENV_KUBECONFIG_PATH_SEPARATOR
from pythonjsonlogger.json import JsonFormatter

from elastic.operator.exceptions import ConfigurationError

UNDEFINED = object()

LOG_FORMATS = ("text", "json")


class Config:
    """
    The central configuration hub for the operator.

    To access the config from another module, import
    :data:`elastic.operator.config.config` and access its attributes.
    """

    #: Time in seconds a single reconciliation of an Elasticsearch cluster may
    #: take before kopf considers the handler as timed out.
    RECONCILE_TIMEOUT: int = 3600

    #: Time in seconds between two periodic reconciliations of the same
    #: cluster. This also drives progress of restart campaigns that are
    #: waiting for the cluster to recover.
    RECONCILE_INTERVAL: int = 30

    #: Time in seconds between two health checks of a cluster, reported to
    #: Prometheus.
    HEALTH_CHECK_INTERVAL: int = 60

    #: Delay in seconds kopf waits before retrying a reconciliation that failed
    #: with a temporary error, e.g. a rollout timeout or an unhealthy cluster.
    TEMPORARY_ERROR_DELAY: int = 30

    #: Time in seconds between two checks while waiting for a workload to
    #: roll out or a node to join or leave the cluster.
    ROLLOUT_POLL_INTERVAL: float = 1.0

    #: Time in seconds to wait for a newly created Deployment to report its
    #: first revision.
    INITIAL_ROLLOUT_TIMEOUT: int = 30

    #: Time in seconds to wait for a pod with the desired spec after pushing a
    #: new pod template to a Deployment.
    NODE_ROLLOUT_TIMEOUT: int = 30

    #: Time in seconds to wait for an Elasticsearch node to join or leave the
    #: cluster.
    CLUSTER_MEMBERSHIP_TIMEOUT: int = 60

    #: How often a status update is retried when the resource was modified
    #: concurrently.
    STATUS_UPDATE_RETRIES: int = 5

    #: The HTTP port of the Elasticsearch service.
    ELASTICSEARCH_PORT: int = 9200

    #: Total time in seconds for a single request to the Elasticsearch API.
    ELASTICSEARCH_REQUEST_TIMEOUT: int = 30

    #: When set to ``True``, the server certificate of Elasticsearch is not
    #: verified. Only meant for development environments.
    ELASTICSEARCH_INSECURE: bool = False

    #: The path to a Kubernetes configuration file to use. Falls back to the
    #: ``KUBECONFIG`` environment variable and then to in-cluster
    #: authentication.
    KUBECONFIG: Optional[str] = None

    #: The log level used for log messages emitted by the operator and its
    #: libraries.
    LOG_LEVEL: str = "INFO"

    #: Either ``text`` or ``json``. With ``json`` every log record is written
    #: as a single JSON object.
    LOG_FORMAT: str = "text"

    #: Port on which the Prometheus metrics are exposed.
    PROMETHEUS_PORT: int = 8080

    #: Enable several testing behaviors, such as not starting the Prometheus
    #: HTTP server.
    TESTING: bool = False

    def __init__(self, *, prefix: str):
        self._prefix = prefix

    def load(self):
        self.RECONCILE_TIMEOUT = self._load_int("RECONCILE_TIMEOUT")
        self.RECONCILE_INTERVAL = self._load_int("RECONCILE_INTERVAL", minimum=1)
        self.HEALTH_CHECK_INTERVAL = self._load_int("HEALTH_CHECK_INTERVAL", minimum=1)
        self.TEMPORARY_ERROR_DELAY = self._load_int("TEMPORARY_ERROR_DELAY")
        self.INITIAL_ROLLOUT_TIMEOUT = self._load_int("INITIAL_ROLLOUT_TIMEOUT")
        self.NODE_ROLLOUT_TIMEOUT = self._load_int("NODE_ROLLOUT_TIMEOUT")
        self.CLUSTER_MEMBERSHIP_TIMEOUT = self._load_int("CLUSTER_MEMBERSHIP_TIMEOUT")
        self.STATUS_UPDATE_RETRIES = self._load_int("STATUS_UPDATE_RETRIES", minimum=1)
        self.ELASTICSEARCH_PORT = self._load_int("ELASTICSEARCH_PORT", minimum=1)
        self.ELASTICSEARCH_REQUEST_TIMEOUT = self._load_int(
            "ELASTICSEARCH_REQUEST_TIMEOUT", minimum=1
        )
        self.PROMETHEUS_PORT = self._load_int("PROMETHEUS_PORT", minimum=1)

        poll_interval = self.env(
            "ROLLOUT_POLL_INTERVAL", default=str(self.ROLLOUT_POLL_INTERVAL)
        )
        try:
            self.ROLLOUT_POLL_INTERVAL = float(poll_interval)
        except ValueError:
            raise ConfigurationError(
                f"Invalid {self._prefix}ROLLOUT_POLL_INTERVAL="
                f"'{poll_interval}'. Needs to be a positive number."
            )
        if self.ROLLOUT_POLL_INTERVAL <= 0:
            raise ConfigurationError(
                f"Invalid {self._prefix}ROLLOUT_POLL_INTERVAL="
                f"'{poll_interval}'. Needs to be a positive number."
            )

        insecure = self.env(
            "ELASTICSEARCH_INSECURE", default=str(self.ELASTICSEARCH_INSECURE)
        )
        self.ELASTICSEARCH_INSECURE = insecure.lower() == "true"

        self.KUBECONFIG = self.env("KUBECONFIG", default=self.KUBECONFIG)
        if self.KUBECONFIG is not None:
            # When the ES_OPERATOR_KUBECONFIG env var is set we need to ensure
            # that KUBECONFIG env var is set to the same value for kopf to
            # pick it up.
            os.environ["KUBECONFIG"] = self.KUBECONFIG
        else:
            self.KUBECONFIG = os.getenv("KUBECONFIG")
        if self.KUBECONFIG is not None:
            for path in self.KUBECONFIG.split(ENV_KUBECONFIG_PATH_SEPARATOR):
                if not os.path.exists(path):
                    raise ConfigurationError(
                        "The KUBECONFIG environment variable contains a path "
                        f"'{path}' that does not exist."
                    )

        self.LOG_LEVEL = self.env("LOG_LEVEL", default=self.LOG_LEVEL)
        level = logging.getLevelName(self.LOG_LEVEL)
        if not isinstance(level, int):
            raise ConfigurationError(
                f"Invalid {self._prefix}LOG_LEVEL='{self.LOG_LEVEL}'."
            )
        for logger_name in ("", "elastic", "kopf", "kubernetes_asyncio"):
            logger = logging.getLogger(logger_name)
            logger.setLevel(level)

        self.LOG_FORMAT = self.env("LOG_FORMAT", default=self.LOG_FORMAT).lower()
        if self.LOG_FORMAT not in LOG_FORMATS:
            raise ConfigurationError(
                f"Invalid {self._prefix}LOG_FORMAT='{self.LOG_FORMAT}'. "
                f"Needs to be one of {', '.join(LOG_FORMATS)}."
            )
        if self.LOG_FORMAT == "json":
            formatter = JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={"levelname": "level", "asctime": "time"},
            )
            for handler in logging.getLogger().handlers:
                handler.setFormatter(formatter)

        testing = self.env("TESTING", default=str(self.TESTING))
        self.TESTING = testing.lower() == "true"

    def _load_int(self, name: str, *, minimum: int = 0) -> int:
        value = self.env(name, default=str(getattr(self, name)))
        try:
            result = int(value)
        except ValueError:
            result = minimum - 1
        if result < minimum:
            raise ConfigurationError(
                f"Invalid {self._prefix}{name}='{value}'. "
                f"Needs to be an integer greater than or equal to {minimum}."
            )
        return result

    def env(self, name: str, *, default=UNDEFINED) -> str:
        """
        Retrieve the environment variable ``name`` or fall-back to its default
        if provided. If no default is provided, a :exc:`~.ConfigurationError` is
        raised.
        """
        full_name = f"{self._prefix}{name}"
        try:
            return os.environ[full_name]
        except KeyError:
            if default is UNDEFINED:
                # raise from None - so that the traceback of the original
                # exception (KeyError) is not printed
                raise ConfigurationError(
                    f"Required environment variable '{full_name}' is not set."
                ) from None
            return default


#: The global instance of the Elasticsearch operator config
config = Config(prefix="ES_OPERATOR_")
