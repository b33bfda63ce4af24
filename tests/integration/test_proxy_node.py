import asyncio
import aiohttp
import pytest
import pytest_asyncio
from ringproxy.nodes.cache_node import CacheNode
from ringproxy.nodes.proxy_node import ProxyNode
from ringproxy.utils.config import NodeConfig

PROXY_PORT = 18901
CACHE_PORTS = [18911, 18912, 18913]
PROXY_URL = f"http://127.0.0.1:{PROXY_PORT}"


def make_proxy_config(log_dir: str, release_after: float = 10.0) -> NodeConfig:
    """Helper to create proxy node config"""
    return NodeConfig(
        node_id="test_proxy",
        host="127.0.0.1",
        port=PROXY_PORT,
        log_level="DEBUG",
        replica_num=10,
        load_bound_factor=0.25,
        release_after=release_after,
        request_timeout=5.0,
        log_dir=log_dir,
    )


def make_cache_config(port: int, log_dir: str) -> NodeConfig:
    """Helper to create cache node config registering with the test proxy"""
    return NodeConfig(
        node_id=f"test_cache_{port}",
        host="127.0.0.1",
        port=port,
        log_level="DEBUG",
        cache_expire=5.0,
        proxy_url=PROXY_URL,
        request_timeout=5.0,
        log_dir=log_dir,
    )


@pytest_asyncio.fixture
async def proxy(tmp_path):
    """Start a proxy with no registered hosts"""
    node = ProxyNode(make_proxy_config(str(tmp_path)))
    await node.start()

    yield node

    await node.shutdown()


@pytest_asyncio.fixture
async def cluster(proxy, tmp_path):
    """Start three cache nodes registered with the proxy"""
    nodes = []
    for port in CACHE_PORTS:
        node = CacheNode(make_cache_config(port, str(tmp_path)))
        await node.start()
        nodes.append(node)

    yield proxy, nodes

    for node in nodes:
        await node.shutdown()


async def fetch(path: str, **params: str) -> tuple[int, str]:
    async with aiohttp.ClientSession() as session:
        async with session.get(f"{PROXY_URL}{path}", params=params) as resp:
            return resp.status, await resp.text()


@pytest.mark.asyncio
async def test_cache_nodes_register_on_start(cluster):
    proxy, nodes = cluster

    assert sorted(proxy.ring.hosts()) == sorted(
        f"127.0.0.1:{port}" for port in CACHE_PORTS
    )
    assert all(node.registered for node in nodes)


@pytest.mark.asyncio
async def test_get_key_forwards_to_owner(cluster):
    proxy, nodes = cluster

    status, text = await fetch("/key", key="user:42")

    assert status == 200
    assert text == "key: user:42, val: hello: user:42"

    owner = proxy.ring.get_key("user:42")
    owner_node = next(n for n in nodes if n.config.advertise_address == owner)
    assert "user:42" in owner_node.cache
    assert all("user:42" not in n.cache for n in nodes if n is not owner_node)


@pytest.mark.asyncio
async def test_get_key_is_stable(cluster):
    proxy, _ = cluster

    owners = {proxy.ring.get_key("stable") for _ in range(5)}
    for _ in range(5):
        status, _ = await fetch("/key", key="stable")
        assert status == 200

    assert len(owners) == 1
    assert all(load == 0 for load in proxy.ring.get_loads().values())


@pytest.mark.asyncio
async def test_get_key_least_reserves_load(cluster):
    proxy, _ = cluster

    for _ in range(30):
        status, text = await fetch("/key_least", key="hot")
        assert status == 200
        assert text == "key: hot, val: hello: hot"

    loads = proxy.ring.get_loads()
    assert sum(loads.values()) == 30
    assert all(load <= proxy.ring.max_load() for load in loads.values())
    # A single hot key is spread over more than one host
    assert sum(1 for load in loads.values() if load > 0) > 1
    assert len(proxy.pending_releases) == 30


@pytest.mark.asyncio
async def test_get_key_least_releases_after_timeout(tmp_path):
    proxy = ProxyNode(make_proxy_config(str(tmp_path), release_after=0.2))
    await proxy.start()
    cache = CacheNode(make_cache_config(CACHE_PORTS[0], str(tmp_path)))
    await cache.start()

    try:
        status, _ = await fetch("/key_least", key="k")
        assert status == 200
        assert proxy.ring.get_loads() == {f"127.0.0.1:{CACHE_PORTS[0]}": 1}

        await asyncio.sleep(0.5)

        assert proxy.ring.get_loads() == {f"127.0.0.1:{CACHE_PORTS[0]}": 0}
        assert proxy.pending_releases == {}
    finally:
        await cache.shutdown()
        await proxy.shutdown()


@pytest.mark.asyncio
async def test_register_and_unregister_endpoints(proxy):
    status, text = await fetch("/register", host="10.0.0.1:8080")
    assert status == 200
    assert text == "register host: 10.0.0.1:8080 success"

    status, text = await fetch("/register", host="10.0.0.1:8080")
    assert status == 409
    assert "already exists" in text

    status, text = await fetch("/unregister", host="10.0.0.1:8080")
    assert status == 200
    assert text == "unregister host: 10.0.0.1:8080 success"

    status, _ = await fetch("/unregister", host="10.0.0.1:8080")
    assert status == 404
    assert proxy.ring.hosts() == []


@pytest.mark.asyncio
async def test_lookup_with_no_hosts(proxy):
    status, _ = await fetch("/key", key="k")
    assert status == 404

    status, _ = await fetch("/key_least", key="k")
    assert status == 404


@pytest.mark.asyncio
async def test_missing_parameters(proxy):
    for path in ("/register", "/unregister", "/key", "/key_least"):
        status, text = await fetch(path)
        assert status == 400
        assert "missing query parameter" in text


@pytest.mark.asyncio
async def test_unreachable_host_is_bad_gateway(proxy):
    # Nothing listens on this port
    proxy.register_host("127.0.0.1:18999")

    status, text = await fetch("/key", key="k")

    assert status == 502
    assert "127.0.0.1:18999" in text


@pytest.mark.asyncio
async def test_hosts_and_loads_endpoints(cluster):
    proxy, _ = cluster
    _ = await fetch("/key_least", key="k")

    async with aiohttp.ClientSession() as session:
        async with session.get(f"{PROXY_URL}/hosts") as resp:
            assert resp.status == 200
            hosts = (await resp.json())["hosts"]
        async with session.get(f"{PROXY_URL}/loads") as resp:
            assert resp.status == 200
            data = await resp.json()

    assert sorted(hosts) == sorted(proxy.ring.hosts())
    assert sum(data["loads"].values()) == 1
    assert data["max_load"] == proxy.ring.max_load()


@pytest.mark.asyncio
async def test_status_endpoint(cluster):
    async with aiohttp.ClientSession() as session:
        async with session.get(f"{PROXY_URL}/status") as resp:
            assert resp.status == 200
            data = await resp.json()

    assert data["node_id"] == "test_proxy"
    assert data["role"] == "proxy"
    assert len(data["hosts"]) == len(CACHE_PORTS)


@pytest.mark.asyncio
async def test_cache_node_unregisters_on_shutdown(cluster):
    proxy, nodes = cluster

    await nodes[0].shutdown()

    assert f"127.0.0.1:{CACHE_PORTS[0]}" not in proxy.ring
    assert len(proxy.ring.hosts()) == 2

    status, _ = await fetch("/key", key="after-leave")
    assert status == 200


@pytest.mark.asyncio
async def test_shutdown_releases_pending_load(cluster):
    proxy, _ = cluster
    for _ in range(5):
        _ = await fetch("/key_least", key="k")

    await proxy.shutdown()

    assert proxy.pending_releases == {}
    assert all(load == 0 for load in proxy.ring.get_loads().values())
