import asyncio
from typing import List

from kubernetes_asyncio.client import ApiClient


class GlobalApiClient(ApiClient):
    """
    A Kubernetes :class:`~kubernetes_asyncio.client.ApiClient` which limits
    the number of concurrently open clients across the whole operator.

    Use it as an async context manager; entering waits for a free slot.
    """

    _semaphore = asyncio.Semaphore(10)

    _instance_track: List["GlobalApiClient"] = []

    @classmethod
    def get_instance_count(cls) -> int:
        return len(cls._instance_track)

    async def __aenter__(self):
        await GlobalApiClient._semaphore.acquire()
        GlobalApiClient._instance_track.append(self)
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        GlobalApiClient._semaphore.release()
        GlobalApiClient._instance_track.remove(self)
        await super().__aexit__(exc_type, exc_value, traceback)
