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
from typing import Callable

import kopf
import wrapt

from elastic.operator.constants import ClusterConditionType, ConditionStatus
from elastic.operator.status import StatusRecorder


async def record_degraded_condition(
    *,
    namespace: str,
    name: str,
    message: str,
    logger: logging.Logger,
    **kwargs,
) -> None:
    """
    Set the ``Degraded`` condition of the cluster with the given message.
    """
    recorder = StatusRecorder(namespace, name, logger)
    await recorder.refresh()
    await recorder.update_condition(
        ClusterConditionType.DEGRADED,
        ConditionStatus.TRUE,
        "ReconcileFailed",
        message,
    )


def timeout(*, timeout: float) -> Callable:
    """
    The ``@es.timeout()`` decorator for kopf handlers. It checks if the runtime
    passed as kwarg to all handlers exceeded the given timeout and raises a
    :exc:`kopf.HandlerTimeoutError` accordingly.

    :param timeout: the overall runtime of the decorated handler
    """

    def decorator(fn: Callable) -> Callable:
        @wrapt.decorator
        async def _async_timeout(wrapped, instance, args, kwargs):
            runtime = kwargs.get("runtime")
            if runtime is not None and runtime.total_seconds() >= timeout:
                raise kopf.HandlerTimeoutError(
                    f"{wrapped.__name__} has timed out after {runtime}."
                )
            return await wrapped(*args, **kwargs)

        return _async_timeout(fn)

    return decorator


def error(*, error_handler: Callable) -> Callable:
    """
    The ``@es.on.error()`` decorator for kopf handlers. It catches permanent
    errors in handlers and runs a given coroutine. It re-raises the exception
    for further processing by kopf.

    :param error_handler: a coroutine which is run on fatal errors
    """

    def decorator(fn: Callable) -> Callable:
        @wrapt.decorator
        async def _async_error(wrapped, instance, args, kwargs):
            try:
                return await wrapped(*args, **kwargs)
            except kopf.PermanentError as e:
                namespace = kwargs.get("namespace")
                name = kwargs.get("name")
                logger = kwargs.get("logger") or logging.getLogger(__name__)
                if (
                    type(e) in [kopf.PermanentError, kopf.HandlerTimeoutError]
                    and callable(error_handler)
                    and namespace
                    and name
                ):
                    try:
                        await error_handler(
                            namespace=namespace,
                            name=name,
                            message=str(e),
                            logger=logger,
                        )
                    except Exception:
                        logger.exception("Failed to record the handler failure.")
                raise

        return _async_error(fn)

    return decorator
