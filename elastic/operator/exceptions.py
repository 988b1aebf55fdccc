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

from typing import Optional


class ConfigurationError(ValueError):
    """
    An exception raised when the operator configuration is invalid.
    """


class OperatorError(Exception):
    """
    Base class for all errors raised while reconciling an Elasticsearch
    cluster. The handler layer turns these into :class:`kopf.TemporaryError`
    so that kopf retries the reconciliation with a backoff.
    """


class GatewayError(OperatorError):
    """
    Raised when the Elasticsearch API could not be reached or answered with a
    non-2xx status code.

    :param message: A human readable description of the failed operation.
    :param status: The HTTP status code, if a response was received.
    :param body: The raw response body, if a response was received.
    """

    def __init__(
        self, message: str, *, status: Optional[int] = None, body: str = ""
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        msg = super().__str__()
        if self.status is not None:
            msg = f"{msg} (HTTP {self.status}): {self.body!r}"
        return msg


class RolloutTimeoutError(OperatorError):
    """
    Raised when a bounded wait on a workload or on cluster membership has
    exceeded its deadline.
    """


class FlushShardsFailed(OperatorError):
    """
    Raised when the synchronized flush before a restart did not succeed on
    all shards. Restart campaigns treat this as a warning.
    """


class InvalidSpecError(OperatorError):
    """
    Raised when the ``Elasticsearch`` resource describes a cluster the
    operator refuses to converge to, e.g. a changed ``genUUID``.
    """


class InvalidTimeUnitError(ValueError):
    """
    Raised when a time unit such as ``"15m"`` cannot be parsed or converted.
    """
