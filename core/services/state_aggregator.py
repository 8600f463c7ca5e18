"""
Live infrastructure snapshot collected from Docker, TrueNAS and Prometheus.

Each source is queried concurrently and degrades on its own: a source that
cannot be reached logs a warning and contributes no data.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

import httpx

import core.config as config
from core.errors import UpstreamUnavailable

logger = config.logger

ROUTER_METRICS = {
    "cpu": "mktxp_system_cpu_load",
    "memory_total": "mktxp_system_total_memory",
    "memory_free": "mktxp_system_free_memory",
    "uptime": "mktxp_system_uptime",
}


@dataclass
class ContainerStatus:
    name: str
    state: str
    health: Optional[str] = None


@dataclass
class PoolStatus:
    name: str
    health: str
    used_percent: float


@dataclass
class RouterStatus:
    cpu_percent: float
    memory_percent: float
    uptime_seconds: float

    @property
    def uptime_days(self) -> int:
        return int(self.uptime_seconds // 86400)


@dataclass
class MonitoringStatus:
    total_targets: int
    up_targets: int
    down_targets: int


@dataclass
class InfraSnapshot:
    containers: list[ContainerStatus] = field(default_factory=list)
    pools: list[PoolStatus] = field(default_factory=list)
    router: Optional[RouterStatus] = None
    monitoring: Optional[MonitoringStatus] = None

    def is_empty(self) -> bool:
        return (
            not self.containers
            and not self.pools
            and self.router is None
            and self.monitoring is None
        )


class StateAggregator:
    """Fan-out collector for the infrastructure snapshot."""

    def __init__(
        self,
        docker_socket_path: str = config.DOCKER_SOCKET_PATH,
        prometheus_url: str = config.PROMETHEUS_URL,
        truenas_url: str = config.TRUENAS_URL,
        truenas_api_key: Optional[str] = config.TRUENAS_API_KEY,
        timeout_seconds: float = config.AGGREGATOR_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.docker_socket_path = docker_socket_path
        self.prometheus_url = prometheus_url.rstrip("/")
        self.truenas_url = truenas_url.rstrip("/")
        self.truenas_api_key = truenas_api_key
        self.timeout_seconds = timeout_seconds
        self.timeout = httpx.Timeout(timeout_seconds)
        # Tests inject an httpx.MockTransport that serves every source.
        self._transport = transport

    def _client(self, **kwargs) -> httpx.AsyncClient:
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(timeout=self.timeout, **kwargs)

    def _docker_client(self) -> httpx.AsyncClient:
        if self._transport is not None:
            return self._client(base_url="http://docker")
        transport = httpx.AsyncHTTPTransport(uds=self.docker_socket_path)
        return httpx.AsyncClient(transport=transport, base_url="http://docker", timeout=self.timeout)

    async def aggregate(self) -> InfraSnapshot:
        containers, pools, router, monitoring = await asyncio.gather(
            self._guard("containers", self.get_containers(), []),
            self._guard("pools", self.get_pools(), []),
            self._guard("router", self.get_router_status(), None),
            self._guard("monitoring", self.get_monitoring_status(), None),
        )
        return InfraSnapshot(
            containers=containers,
            pools=pools,
            router=router,
            monitoring=monitoring,
        )

    async def _guard(self, source: str, coro, fallback):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out fetching %s status after %ss", source, self.timeout_seconds,
                extra={"source": source},
            )
            return fallback
        except (httpx.HTTPError, UpstreamUnavailable, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning(
                "Failed to fetch %s status: %s", source, exc,
                extra={"source": source},
            )
            return fallback

    # -------------------------------------------------------------------------
    # Sources
    # -------------------------------------------------------------------------

    async def get_containers(self) -> list[ContainerStatus]:
        async with self._docker_client() as client:
            response = await client.get("/containers/json", params={"all": "true"})
            response.raise_for_status()
            payload = response.json()

        containers = []
        for item in payload:
            names = item.get("Names") or []
            name = names[0].lstrip("/") if names else (item.get("Id") or "")[:12]
            containers.append(
                ContainerStatus(
                    name=name,
                    state=item.get("State") or "unknown",
                    health=item.get("Status") or None,
                )
            )
        return containers

    async def get_pools(self) -> list[PoolStatus]:
        headers = {}
        if self.truenas_api_key:
            headers["Authorization"] = f"Bearer {self.truenas_api_key}"
        async with self._client() as client:
            response = await client.get(f"{self.truenas_url}/api/v2.0/pool", headers=headers)
            response.raise_for_status()
            payload = response.json()

        pools = []
        for item in payload or []:
            size = item.get("size") or 0
            allocated = item.get("allocated") or 0
            used_percent = (allocated / size) * 100 if size > 0 else 0.0
            pools.append(
                PoolStatus(
                    name=item.get("name") or "unknown",
                    health=item.get("status") or "unknown",
                    used_percent=used_percent,
                )
            )
        return pools

    async def _query_prometheus_value(self, client: httpx.AsyncClient, metric: str) -> float:
        response = await client.get(f"{self.prometheus_url}/api/v1/query", params={"query": metric})
        response.raise_for_status()
        results = (response.json().get("data") or {}).get("result") or []
        if not results or len(results[0].get("value") or []) < 2:
            raise UpstreamUnavailable(f"no samples for {metric}")
        return float(results[0]["value"][1])

    async def get_router_status(self) -> RouterStatus:
        async with self._client() as client:
            samples = await asyncio.gather(
                *(self._query_prometheus_value(client, metric) for metric in ROUTER_METRICS.values()),
                return_exceptions=True,
            )
        for sample in samples:
            if isinstance(sample, BaseException):
                raise sample
        values = dict(zip(ROUTER_METRICS, samples))

        total = values["memory_total"]
        memory_percent = ((total - values["memory_free"]) / total) * 100 if total > 0 else 0.0
        return RouterStatus(
            cpu_percent=values["cpu"],
            memory_percent=memory_percent,
            uptime_seconds=values["uptime"],
        )

    async def get_monitoring_status(self) -> MonitoringStatus:
        async with self._client() as client:
            response = await client.get(f"{self.prometheus_url}/api/v1/targets")
            response.raise_for_status()
            targets = (response.json().get("data") or {}).get("activeTargets") or []

        return MonitoringStatus(
            total_targets=len(targets),
            up_targets=sum(1 for target in targets if target.get("health") == "up"),
            down_targets=sum(1 for target in targets if target.get("health") == "down"),
        )
