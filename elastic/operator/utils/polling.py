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

import asyncio
from typing import Awaitable, Callable, Optional

from elastic.operator.config import config
from elastic.operator.exceptions import RolloutTimeoutError


async def poll_until(
    condition: Callable[[], Awaitable[bool]],
    *,
    timeout: float,
    message: str,
    interval: Optional[float] = None,
) -> None:
    """
    Await ``condition()`` repeatedly until it returns ``True``.

    The condition is always checked at least once, even with a ``timeout`` of
    ``0``.

    :param condition: A coroutine function without arguments.
    :param timeout: The number of seconds after which to give up.
    :param message: The message of the :exc:`~.RolloutTimeoutError` raised
        when the condition did not become ``True`` in time.
    :param interval: The number of seconds between two checks. Defaults to
        :attr:`~elastic.operator.config.Config.ROLLOUT_POLL_INTERVAL`.
    """
    if interval is None:
        interval = config.ROLLOUT_POLL_INTERVAL
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await condition():
        if loop.time() >= deadline:
            raise RolloutTimeoutError(f"{message} (timed out after {timeout}s)")
        await asyncio.sleep(interval)
