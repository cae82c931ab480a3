"""
Trace backend client (Opik-compatible REST API).

Guardian traces are named ``guardian-<interactionId>``; scores attach to that
trace and learning outputs are written as child traces that reference it.
Every call may raise; callers decide whether a failure matters.
"""
from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Any

import httpx

from ..config import TelemetryConfig, get_telemetry_config

logger = logging.getLogger(__name__)


def guardian_trace_name(interaction_id: str) -> str:
    return f"guardian-{interaction_id}"


class TraceClient:
    def __init__(self, config: TelemetryConfig, http: httpx.Client | None = None) -> None:
        self.config = config
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["authorization"] = config.api_key
        if config.workspace:
            headers["Comet-Workspace"] = config.workspace
        self._http = http or httpx.Client(
            base_url=config.base_url,
            headers=headers,
            timeout=config.timeout_seconds,
        )

    def close(self) -> None:
        self._http.close()

    def _find_trace_id(self, name: str) -> str | None:
        resp = self._http.post(
            "/v1/private/traces/search",
            json={
                "project_name": self.config.project_name,
                "filters": [{"field": "name", "operator": "=", "value": name}],
                "limit": 1,
            },
        )
        resp.raise_for_status()
        body = resp.json() if resp.content else {}
        traces = body.get("content") or body.get("traces") or []
        if not traces:
            return None
        return str(traces[0]["id"])

    def attach_score(self, interaction_id: str, metric_name: str, value: float, reason: str) -> bool:
        trace_id = self._find_trace_id(guardian_trace_name(interaction_id))
        if trace_id is None:
            logger.info("No guardian trace for %s; skipping %s score", interaction_id, metric_name)
            return False
        resp = self._http.put(
            "/v1/private/traces/feedback-scores",
            json={
                "scores": [
                    {
                        "id": trace_id,
                        "project_name": self.config.project_name,
                        "name": metric_name,
                        "value": value,
                        "reason": reason,
                        "source": "sdk",
                    }
                ]
            },
        )
        resp.raise_for_status()
        return True

    def log_trace(
        self,
        name: str,
        *,
        input: dict[str, Any],
        output: dict[str, Any] | None = None,
        tags: list[str] | None = None,
    ) -> str:
        trace_id = str(uuid.uuid4())
        now = dt.datetime.now(dt.timezone.utc).isoformat()
        resp = self._http.post(
            "/v1/private/traces",
            json={
                "id": trace_id,
                "project_name": self.config.project_name,
                "name": name,
                "start_time": now,
                "end_time": now,
                "input": input,
                "output": output or {},
                "tags": tags or [],
            },
        )
        resp.raise_for_status()
        return trace_id

    def attach_output(
        self,
        interaction_id: str,
        output: dict[str, Any],
        tags: list[str],
        *,
        name: str = "learning:reflection",
    ) -> str:
        parent_id = self._find_trace_id(guardian_trace_name(interaction_id))
        return self.log_trace(
            name,
            input={"interactionId": interaction_id, "parentTraceId": parent_id},
            output=output,
            tags=tags,
        )


_client: TraceClient | None = None


def get_telemetry() -> TraceClient | None:
    """Shared client, or ``None`` when no API key is configured (local development)."""
    global _client
    if _client is not None:
        return _client
    config = get_telemetry_config()
    if not config.api_key:
        return None
    _client = TraceClient(config)
    return _client


def close_telemetry() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
