# redis_status.py
from __future__ import annotations

import json
from typing import Any, Optional

import redis

from .report import RunReport, StatusReporter

DEFAULT_CHANNEL = "relayci:status"


def status_channel(prefix: str, run_id: str) -> str:
    return f"{prefix}:{run_id}"


def snapshot_key(prefix: str, run_id: str) -> str:
    return f"{prefix}:run:{run_id}"


class RedisStatusReporter(StatusReporter):
    """
    Publishes every run snapshot as JSON on `<channel>:<run_id>` and keeps the
    latest one under `<channel>:run:<run_id>` for late readers.

    Final snapshots get an expiry when `ttl_seconds` is set.
    """

    def __init__(self, client: Any, channel: str = DEFAULT_CHANNEL, ttl_seconds: Optional[int] = None):
        self.r = client
        self.channel = channel
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, channel: str = DEFAULT_CHANNEL, **kwargs) -> "RedisStatusReporter":
        return cls(redis.from_url(url, decode_responses=True), channel=channel, **kwargs)

    def _payload(self, report: RunReport) -> str:
        return json.dumps(report.to_dict(), sort_keys=True, default=str)

    def publish(self, report: RunReport) -> None:
        payload = self._payload(report)
        self.r.set(snapshot_key(self.channel, report.run_id), payload)
        self.r.publish(status_channel(self.channel, report.run_id), payload)

    def finalize(self, report: RunReport) -> None:
        payload = self._payload(report)
        key = snapshot_key(self.channel, report.run_id)
        if self.ttl_seconds:
            self.r.set(key, payload, ex=self.ttl_seconds)
        else:
            self.r.set(key, payload)
        self.r.publish(status_channel(self.channel, report.run_id), payload)

    def latest(self, run_id: str) -> Optional[dict]:
        raw = self.r.get(snapshot_key(self.channel, run_id))
        return json.loads(raw) if raw else None
