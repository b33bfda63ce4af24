"""
Consistent hashing ring with bounded loads.

Hosts are placed on a 64-bit ring as `replica_num` virtual nodes each. Plain
lookups return the owner of the first virtual node clockwise from the key.
Bounded lookups keep walking clockwise until they reach a host whose load,
plus the request about to be added, stays within
`ceil(average_load * (1 + load_bound_factor))`.

ref: https://research.googleblog.com/2017/04/consistent-hashing-with-bounded-loads.html
"""

import hashlib
import logging
import math
from bisect import bisect_left
from collections.abc import Callable
from dataclasses import dataclass, field

from ..utils.rwlock import RWLock
from .errors import HostAlreadyExists, HostNotFound, LoadBoundExhausted

logger = logging.getLogger(__name__)

HashFunc = Callable[[str], int]

DEFAULT_REPLICA_NUM = 10
DEFAULT_LOAD_BOUND_FACTOR = 0.25

HASH_SPACE_MASK = (1 << 64) - 1


def sha512_hash(key: str) -> int:
    """First 8 bytes of the SHA-512 digest as a little-endian uint64"""
    digest = hashlib.sha512(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "little")


@dataclass(frozen=True)
class RingConfig:
    """Construction-time settings of a ring"""

    replica_num: int = DEFAULT_REPLICA_NUM
    load_bound_factor: float = DEFAULT_LOAD_BOUND_FACTOR
    hash_func: HashFunc = sha512_hash

    def __post_init__(self) -> None:
        if self.replica_num < 1:
            raise ValueError(f"replica_num must be at least 1: {self.replica_num}")
        if self.load_bound_factor < 0:
            raise ValueError(
                f"load_bound_factor must be non-negative: {self.load_bound_factor}"
            )


@dataclass
class Host:
    """A registered host and its in-flight load"""

    name: str
    load: int = 0
    replicas: list[int] = field(default_factory=list)  # virtual node hashes


class ConsistentHashRing:
    """Thread-safe consistent hashing ring with bounded-load selection"""

    def __init__(self, config: RingConfig | None = None):
        self.config: RingConfig = config or RingConfig()

        self._hosts: dict[str, Host] = {}
        self._replica_hosts: dict[int, str] = {}  # virtual node hash -> host name
        self._sorted_hashes: list[int] = []
        self._total_load: int = 0

        self._lock: RWLock = RWLock()

    def register_host(self, name: str) -> None:
        """Add a host and its virtual nodes to the ring"""
        with self._lock.writer():
            if name in self._hosts:
                raise HostAlreadyExists(name)

            host = Host(name=name)
            for i in range(self.config.replica_num):
                hash_value = self._place_replica(name, i)
                self._replica_hosts[hash_value] = name
                self._sorted_hashes.append(hash_value)
                host.replicas.append(hash_value)

            self._sorted_hashes.sort()
            self._hosts[name] = host

        logger.debug(f"Registered host {name} with {len(host.replicas)} replicas")

    def unregister_host(self, name: str) -> None:
        """Remove a host, its virtual nodes and its load from the ring"""
        with self._lock.writer():
            host = self._hosts.pop(name, None)
            if host is None:
                raise HostNotFound(name)

            for hash_value in host.replicas:
                del self._replica_hosts[hash_value]
                self._delete_hash_index(hash_value)

            self._total_load -= host.load

        logger.debug(f"Unregistered host {name}")

    def get_key(self, key: str) -> str:
        """Return the host owning the first virtual node clockwise from key"""
        with self._lock.reader():
            if not self._sorted_hashes:
                raise HostNotFound()

            idx = self._search_key(self.config.hash_func(key))
            return self._replica_hosts[self._sorted_hashes[idx]]

    def get_key_least(self, key: str) -> str:
        """Return the nearest host clockwise from key that has spare capacity.

        The returned host is not reserved; call `inc` to take the capacity and
        `done` once the request is finished.

        Raises:
            HostNotFound: If the ring has no hosts
        """
        with self._lock.reader():
            if not self._hosts:
                raise HostNotFound()

            capacity = self._capacity()
            ring_size = len(self._sorted_hashes)
            idx = self._search_key(self.config.hash_func(key))

            for _ in range(ring_size):
                name = self._replica_hosts[self._sorted_hashes[idx]]
                if self._hosts[name].load + 1 <= capacity:
                    return name

                idx += 1
                # Wrap around the ring
                if idx >= ring_size:
                    idx = 0

            raise LoadBoundExhausted(key, capacity)

    def inc(self, name: str) -> None:
        """Increment the load of a host by 1"""
        with self._lock.writer():
            host = self._hosts.get(name)
            if host is None:
                logger.debug(f"inc on unknown host {name} ignored")
                return

            host.load += 1
            self._total_load += 1

    def done(self, name: str) -> None:
        """Decrement the load of a host by 1"""
        with self._lock.writer():
            host = self._hosts.get(name)
            if host is None:
                return

            # Someone called done more often than inc
            if host.load <= 0:
                logger.warning(f"done on host {name} with no load ignored")
                return

            host.load -= 1
            self._total_load -= 1

    def update_load(self, name: str, load: int) -> None:
        """Set the load of a host to the given value"""
        with self._lock.writer():
            host = self._hosts.get(name)
            if host is None:
                return

            load = max(load, 0)
            self._total_load += load - host.load
            host.load = load

    def hosts(self) -> list[str]:
        """Return the list of registered hosts"""
        with self._lock.reader():
            return list(self._hosts)

    def get_loads(self) -> dict[str, int]:
        """Return the load of every registered host"""
        with self._lock.reader():
            return {name: host.load for name, host in self._hosts.items()}

    def max_load(self) -> int:
        """Return the maximum load a single host may carry.

        That is ceil((total_load / number_of_hosts) * (1 + load_bound_factor)),
        with both terms floored to 1.
        """
        with self._lock.reader():
            total_load = max(self._total_load, 1)
            host_count = max(len(self._hosts), 1)
            return math.ceil(
                (total_load / host_count) * (1 + self.config.load_bound_factor)
            )

    def __len__(self) -> int:
        """Number of registered hosts"""
        with self._lock.reader():
            return len(self._hosts)

    def __contains__(self, name: object) -> bool:
        with self._lock.reader():
            return name in self._hosts

    def _place_replica(self, name: str, index: int) -> int:
        """Hash a virtual node, probing past values already on the ring"""
        hash_value = self.config.hash_func(f"{name}{index}") & HASH_SPACE_MASK
        while hash_value in self._replica_hosts:
            logger.debug(f"Virtual node {name}{index} collides at {hash_value}")
            hash_value = (hash_value + 1) & HASH_SPACE_MASK
        return hash_value

    def _capacity(self) -> int:
        """Load ceiling for a host once the caller adds one more request"""
        total_load = max(self._total_load, 0)
        avg_load = (total_load + 1) / len(self._hosts)
        return math.ceil(avg_load * (1 + self.config.load_bound_factor))

    def _search_key(self, hash_value: int) -> int:
        """Index of the first ring entry >= hash_value, wrapping to 0"""
        idx = bisect_left(self._sorted_hashes, hash_value)
        if idx >= len(self._sorted_hashes):
            idx = 0
        return idx

    def _delete_hash_index(self, hash_value: int) -> None:
        """Remove a hash from the sorted ring"""
        idx = bisect_left(self._sorted_hashes, hash_value)
        if idx < len(self._sorted_hashes) and self._sorted_hashes[idx] == hash_value:
            del self._sorted_hashes[idx]
