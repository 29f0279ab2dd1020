"""Minimal Prometheus HTTP API client.

Only instant queries are needed: every signal is already aggregated over
its look-back window inside the PromQL expression.
"""

from __future__ import annotations

import math

import httpx


class MetricsQueryError(Exception):
    """A query failed, timed out or returned no usable scalar."""


class UndefinedSampleError(MetricsQueryError):
    """The query evaluated to NaN, as a ratio over zero traffic does."""


class PrometheusClient:
    """Runs instant queries against ``<base_url>/api/v1/query``.

    Args:
        base_url:  Prometheus server URL, e.g. ``http://prometheus:9090``.
        timeout:   Per-query timeout in seconds.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def query(self, expr: str) -> float:
        """Return the first sample value of *expr*.

        Raises:
            MetricsQueryError: on transport failure, timeout, non-success
                status, an empty result or a non-finite value.
            UndefinedSampleError: the sample is NaN.
        """
        try:
            response = await self._client.get("/api/v1/query", params={"query": expr})
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as exc:
            raise MetricsQueryError(f"query timed out: {expr}") from exc
        except httpx.HTTPError as exc:
            raise MetricsQueryError(f"query failed: {exc}") from exc
        except ValueError as exc:
            raise MetricsQueryError("response is not valid JSON") from exc

        if body.get("status") != "success":
            raise MetricsQueryError(f"prometheus error: {body.get('error', 'unknown')}")

        data = body.get("data", {})
        result = data.get("result")
        if data.get("resultType") == "scalar" and isinstance(result, list):
            raw = result[1]
        elif isinstance(result, list) and result:
            raw = result[0].get("value", [None, None])[1]
        else:
            raise MetricsQueryError(f"empty result for: {expr}")

        try:
            value = float(raw)
        except (TypeError, ValueError) as exc:
            raise MetricsQueryError(f"non-numeric sample {raw!r}") from exc
        if math.isnan(value):
            raise UndefinedSampleError(f"undefined sample for: {expr}")
        if not math.isfinite(value):
            raise MetricsQueryError(f"non-finite sample {raw!r}")
        return value

    async def close(self) -> None:
        await self._client.aclose()

    async def stop(self) -> None:
        await self.close()
