import socket
from concurrent.futures import ThreadPoolExecutor

import pytest
from unittest.mock import patch

from launchpad.core.errors import NoPortAvailable
from launchpad.services.port_allocator import PortAllocator, is_port_free


@pytest.fixture
def allocator():
    return PortAllocator(41000, 41007)


def test_n_concurrent_allocations_get_n_distinct_ports(allocator):
    with patch("launchpad.services.port_allocator.is_port_free", return_value=True):
        with ThreadPoolExecutor(max_workers=8) as pool:
            ports = list(pool.map(lambda i: allocator.allocate(f"run-{i}"), range(8)))

        assert len(set(ports)) == 8
        assert all(41000 <= p <= 41007 for p in ports)

        with pytest.raises(NoPortAvailable):
            allocator.allocate("run-9")


def test_released_port_is_allocatable_again(allocator):
    with patch("launchpad.services.port_allocator.is_port_free", return_value=True):
        ports = [allocator.allocate(f"run-{i}") for i in range(8)]
        assert allocator.release(ports[3], owner="run-3") is True
        assert allocator.allocate("run-new") == ports[3]
        assert allocator.holder(ports[3]) == "run-new"


def test_release_is_idempotent_and_checks_owner(allocator):
    with patch("launchpad.services.port_allocator.is_port_free", return_value=True):
        port = allocator.allocate("run-a")

    assert allocator.release(port, owner="run-b") is False
    assert allocator.is_reserved(port)
    assert allocator.release(port, owner="run-a") is True
    assert allocator.release(port, owner="run-a") is False
    assert allocator.release(None) is False


def test_ports_bound_on_the_host_are_skipped():
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("0.0.0.0", 0))
    listener.listen(1)
    busy = listener.getsockname()[1]
    try:
        assert is_port_free(busy) is False
        with pytest.raises(NoPortAvailable):
            PortAllocator(busy, busy).allocate("run-x")
    finally:
        listener.close()


def test_invalid_range_is_rejected():
    with pytest.raises(ValueError):
        PortAllocator(5000, 4000)
