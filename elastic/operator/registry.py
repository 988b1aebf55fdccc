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
import contextlib
from typing import AsyncIterator, Dict, List, Tuple

from elastic.operator.nodes import ManagedNode

ClusterKey = Tuple[str, str]


class NodeRegistry:
    """
    The managed nodes of every cluster the operator knows about.

    Nodes are kept between reconciliations so that they remember the
    configmap and secret hashes they were last rolled out with. Each cluster
    has its own lock which a reconciliation holds for its whole duration. A
    lock only exists while it is held or awaited.
    """

    def __init__(self):
        self._nodes: Dict[ClusterKey, List[ManagedNode]] = {}
        self._locks: Dict[ClusterKey, asyncio.Lock] = {}
        self._lock_users: Dict[ClusterKey, int] = {}

    @contextlib.asynccontextmanager
    async def lock(self, namespace: str, name: str) -> AsyncIterator[None]:
        key = (namespace, name)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    def get(self, namespace: str, name: str) -> List[ManagedNode]:
        return list(self._nodes.get((namespace, name), []))

    def set(self, namespace: str, name: str, nodes: List[ManagedNode]) -> None:
        self._nodes[(namespace, name)] = list(nodes)

    def forget(self, namespace: str, name: str) -> None:
        self._nodes.pop((namespace, name), None)


#: The registry used by the kopf handlers.
registry = NodeRegistry()
