from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field

from syncgate.schemas import OnlineEndpoint, SubscriberRecord

from .topology import user_key


@dataclass(frozen=True)
class UserLimit:
    subscriber_id: int
    speed_limit: int
    ip_limit: int


@dataclass
class InboundLimiter:
    tag: str
    speed_limit: int
    users: dict[str, UserLimit] = field(default_factory=dict)
    # user key -> connected source IPs
    online: dict[str, set[str]] = field(default_factory=dict)


def _effective(node_limit: int, user_limit: int) -> int:
    limits = [value for value in (node_limit, user_limit) if value > 0]
    return min(limits) if limits else 0


class LimiterRegistry:
    """
    Per-tag limiter state: node speed limit, per-user speed/IP limits, online IPs.

    The token buckets themselves live in the data plane; this registry only holds the
    parameters they are seeded from and the presence data they report back.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._inbounds: dict[str, InboundLimiter] = {}

    def add(self, tag: str, speed_limit: int, subscribers: Iterable[SubscriberRecord]) -> None:
        limiter = InboundLimiter(tag=tag, speed_limit=int(speed_limit or 0))
        for row in subscribers:
            limiter.users[user_key(tag, row)] = UserLimit(row.id, int(row.speed_limit), int(row.ip_limit))
        with self._lock:
            self._inbounds[tag] = limiter

    def update(self, tag: str, subscribers: Iterable[SubscriberRecord]) -> None:
        with self._lock:
            limiter = self._inbounds.get(tag)
            if limiter is None:
                raise KeyError(f"no limiter for tag {tag}")
            for row in subscribers:
                key = user_key(tag, row)
                # A changed email yields a new key; drop the stale entry for the same id.
                stale = [k for k, v in limiter.users.items() if v.subscriber_id == row.id and k != key]
                for k in stale:
                    limiter.users.pop(k, None)
                    limiter.online.pop(k, None)
                limiter.users[key] = UserLimit(row.id, int(row.speed_limit), int(row.ip_limit))

    def drop_users(self, tag: str, keys: Iterable[str]) -> None:
        with self._lock:
            limiter = self._inbounds.get(tag)
            if limiter is None:
                return
            for key in keys:
                limiter.users.pop(key, None)
                limiter.online.pop(key, None)

    def remove(self, tag: str) -> None:
        with self._lock:
            self._inbounds.pop(tag, None)

    def has(self, tag: str) -> bool:
        with self._lock:
            return tag in self._inbounds

    def tags(self) -> list[str]:
        with self._lock:
            return sorted(self._inbounds)

    def user_keys(self, tag: str) -> list[str]:
        with self._lock:
            limiter = self._inbounds.get(tag)
            return sorted(limiter.users) if limiter else []

    def speed_limit_for(self, tag: str, key: str) -> int:
        with self._lock:
            limiter = self._inbounds.get(tag)
            if limiter is None:
                return 0
            user = limiter.users.get(key)
            return _effective(limiter.speed_limit, user.speed_limit if user else 0)

    def record_online(self, tag: str, key: str, ips: Iterable[str]) -> bool:
        """Replace the online IP set for a user. Returns False when the IP limit is exceeded."""
        with self._lock:
            limiter = self._inbounds.get(tag)
            if limiter is None:
                return True
            current = {ip for ip in ips if ip}
            if current:
                limiter.online[key] = current
            else:
                limiter.online.pop(key, None)
            user = limiter.users.get(key)
            return not (user and user.ip_limit > 0 and len(current) > user.ip_limit)

    def online_endpoints(self, tag: str) -> list[OnlineEndpoint]:
        with self._lock:
            limiter = self._inbounds.get(tag)
            if limiter is None:
                return []
            out: list[OnlineEndpoint] = []
            for key in sorted(limiter.online):
                user = limiter.users.get(key)
                if user is None:
                    continue
                for ip in sorted(limiter.online[key]):
                    out.append(OnlineEndpoint(id=user.subscriber_id, ip=ip))
            return out
