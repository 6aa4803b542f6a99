"""
PerpFlow — Pattern Producer
─────────────────────────────
The pattern classifier lives elsewhere. This module defines what the
orchestrator expects from it and ships the HTTP implementation that
calls the compute endpoint.

Request:   POST {PATTERN_COMPUTE_URL}
           Authorization: Bearer {CANDLESTICK_CRON_SECRET}
           {"timeframes": ["1h", "4h"], "force": true}

Accepted response shapes (2xx):
           {"patterns": {"1h": [...], "4h": [...]}, "totalScanned": 200}
           {"timeframe": "1h", "patterns": [...], "totalScanned": 200}

Anything else is a ComputeProducerError with the status/body verbatim.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from signal_engine.errors import ComputeProducerError, InvalidInput
from signal_engine.models.pattern_payload import Timeframe

log = logging.getLogger("pf.producer")

PATTERN_COMPUTE_URL = os.environ.get(
    "PATTERN_COMPUTE_URL", "http://localhost:8000/api/candlestick-compute"
).rstrip("/")
CRON_SECRET      = os.environ.get("CANDLESTICK_CRON_SECRET", "default-secret")
PRODUCER_TIMEOUT = float(os.environ.get("PRODUCER_TIMEOUT", "60"))
RETRY_ATTEMPTS   = int(os.environ.get("PRODUCER_RETRY_ATTEMPTS", "1"))
RETRY_DELAY      = 3.0
BODY_LIMIT       = 2000


@dataclass
class ProducerResult:
    patterns:      Dict[Timeframe, List[dict]]
    total_scanned: int = 0
    raw:           Dict[str, Any] = field(default_factory=dict)


class PatternProducer(ABC):
    """Recomputes pattern sets for an explicit subset of timeframes."""

    @abstractmethod
    async def compute(self, timeframes: Sequence[Timeframe], force: bool) -> ProducerResult: ...


def parse_producer_body(body: Any) -> ProducerResult:
    if not isinstance(body, dict):
        raise ComputeProducerError(
            "Producer returned a non-object body",
            classification="malformed_response", body=str(body)[:BODY_LIMIT],
        )
    if body.get("success") is False:
        raise ComputeProducerError(
            f"Producer reported failure: {body.get('error') or 'unknown'}",
            classification="http_error", body=str(body)[:BODY_LIMIT],
        )

    total    = body.get("totalScanned") or 0
    patterns = body.get("patterns")
    out: Dict[Timeframe, List[dict]] = {}

    try:
        if isinstance(patterns, dict):
            for key, items in patterns.items():
                out[Timeframe.parse(key)] = list(items or [])
        elif isinstance(patterns, list) and body.get("timeframe"):
            out[Timeframe.parse(body["timeframe"])] = patterns
        else:
            raise ComputeProducerError(
                "Producer body has no usable patterns",
                classification="malformed_response", body=str(body)[:BODY_LIMIT],
            )
    except InvalidInput as e:
        raise ComputeProducerError(
            f"Producer returned an unknown timeframe: {e.message}",
            classification="malformed_response", body=str(body)[:BODY_LIMIT],
        ) from e

    return ProducerResult(patterns=out, total_scanned=int(total), raw=body)


class HttpPatternProducer(PatternProducer):

    def __init__(
        self,
        url: str = PATTERN_COMPUTE_URL,
        secret: str = CRON_SECRET,
        *,
        timeout: float = PRODUCER_TIMEOUT,
        attempts: int = RETRY_ATTEMPTS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url      = url
        self.secret   = secret
        self.timeout  = timeout
        self.attempts = max(1, attempts)
        self._client  = client

    async def _post(self, client: httpx.AsyncClient, payload: dict) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.secret}", "Content-Type": "application/json"}
        last_error: Optional[ComputeProducerError] = None

        for attempt in range(self.attempts):
            try:
                return await client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            except httpx.TimeoutException as e:
                last_error = ComputeProducerError(
                    f"Producer timed out after {self.timeout}s", classification="timeout",
                )
                log.warning(f"  Timeout attempt {attempt+1}: {e}")
            except httpx.HTTPError as e:
                last_error = ComputeProducerError(
                    f"Producer unreachable: {e}", classification="unreachable",
                )
                log.warning(f"  Error attempt {attempt+1}: {e}")

            if attempt < self.attempts - 1:
                await asyncio.sleep(RETRY_DELAY * (attempt + 1))

        raise last_error

    async def compute(self, timeframes: Sequence[Timeframe], force: bool) -> ProducerResult:
        payload = {"timeframes": [Timeframe.parse(t).value for t in timeframes], "force": force}
        log.info(f"Requesting pattern compute {payload['timeframes']} (force={force})")

        if self._client is not None:
            r = await self._post(self._client, payload)
        else:
            async with httpx.AsyncClient() as client:
                r = await self._post(client, payload)

        if r.status_code < 200 or r.status_code >= 300:
            log.error(f"Producer HTTP {r.status_code}: {r.text[:200]}")
            raise ComputeProducerError(
                f"Producer returned HTTP {r.status_code}",
                classification="http_error",
                status_code=r.status_code,
                body=r.text[:BODY_LIMIT],
            )

        try:
            body = r.json()
        except ValueError as e:
            raise ComputeProducerError(
                "Producer returned invalid JSON",
                classification="malformed_response",
                status_code=r.status_code,
                body=r.text[:BODY_LIMIT],
            ) from e

        return parse_producer_body(body)
