"""Concurrent instance health probing.

One plain HTTP GET per instance, no retries inside a probe round. A 2xx
within the timeout is healthy; anything else, including a timeout or a
connection error, is unhealthy.
"""

from __future__ import annotations

import asyncio

import httpx

from scalewarden.models.scaling import Instance
from scalewarden.observability.logging import get_logger
from scalewarden.observability.metrics import health_probe_failures_total

_logger = get_logger("loadbalancer.health")


class HealthChecker:
    """Probes instances with at most *concurrency* requests in flight.

    Args:
        concurrency: Semaphore size for one ``check_all`` round.
        transport:   Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        concurrency: int = 8,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._concurrency = concurrency
        self._transport = transport

    async def check(
        self,
        client: httpx.AsyncClient,
        instance: Instance,
        path: str,
        timeout: float,
    ) -> bool:
        url = f"http://{instance.address}{path}"
        try:
            response = await client.get(url, timeout=timeout)
        except httpx.TimeoutException:
            _logger.info("health_check_timeout", instance=instance.instance_id, url=url, timeout=timeout)
            return False
        except httpx.HTTPError as exc:
            _logger.info("health_check_error", instance=instance.instance_id, url=url, error=str(exc))
            return False
        if response.is_success:
            return True
        _logger.info(
            "health_check_failed",
            instance=instance.instance_id,
            url=url,
            status_code=response.status_code,
        )
        return False

    async def check_all(
        self,
        service: str,
        instances: list[Instance],
        path: str,
        timeout: float,
    ) -> dict[Instance, bool]:
        """Probe every instance concurrently; a slow instance never stalls the others."""
        if not instances:
            return {}
        semaphore = asyncio.Semaphore(self._concurrency)

        async with httpx.AsyncClient(transport=self._transport, follow_redirects=False) as client:

            async def _probe(instance: Instance) -> bool:
                async with semaphore:
                    try:
                        # Outer bound in case the transport ignores its own timeout.
                        return await asyncio.wait_for(self.check(client, instance, path, timeout), timeout + 1)
                    except TimeoutError:
                        return False

            results = await asyncio.gather(*(_probe(i) for i in instances))

        outcome = dict(zip(instances, results, strict=True))
        failed = [i.instance_id for i, ok in outcome.items() if not ok]
        if failed:
            health_probe_failures_total.labels(service=service).inc(len(failed))
        _logger.debug("health_round_complete", service=service, total=len(instances), unhealthy=failed)
        return outcome
