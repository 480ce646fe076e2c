"""Tests for tinydock.network."""

import pytest

from tinydock.network import (DEFAULT_BRIDGE, NetworkError, NetworkManager,
                              hosts_entries, write_hosts_file)


@pytest.fixture
def networks():
    return NetworkManager()


class TestNetworkManager:
    """Test network creation and address management."""

    def test_create_allocates_subnets(self, networks):
        """Test each network gets its own /24 with a gateway."""
        first = networks.create("front")
        second = networks.create("back")

        assert first.subnet == "10.0.0.0/24"
        assert first.gateway == "10.0.0.1"
        assert second.subnet == "10.0.1.0/24"
        assert [n.name for n in networks.list()] == ["back", "front"]

    def test_subnet_reused_after_removal(self, networks):
        """Test freed subnets are handed out again."""
        networks.create("one")
        networks.remove("one")
        assert networks.create("two").subnet == "10.0.0.0/24"

    def test_duplicate_and_exist_ok(self, networks):
        """Test duplicate names."""
        created = networks.create("net")
        with pytest.raises(NetworkError, match="already exists"):
            networks.create("net")
        assert networks.create("net", exist_ok=True).subnet == created.subnet

    @pytest.mark.parametrize("name", ["", "-bad", "has space", "a/b"])
    def test_invalid_name(self, networks, name):
        """Test network names are validated."""
        with pytest.raises(NetworkError):
            networks.create(name)

    def test_unsupported_driver(self, networks):
        """Test only the bridge driver exists."""
        with pytest.raises(NetworkError, match="unsupported network driver"):
            networks.create("net", driver="overlay")

    def test_connect_assigns_addresses(self, networks):
        """Test addresses are assigned in order, skipping the gateway."""
        networks.create("net")
        assert networks.connect("net", "c1", "web") == "10.0.0.2"
        assert networks.connect("net", "c2", "db") == "10.0.0.3"
        # Reconnecting keeps the address free for the same container
        assert networks.connect("net", "c1", "web") == "10.0.0.2"

    def test_connect_explicit_ip(self, networks):
        """Test requested addresses must be free and in the subnet."""
        networks.create("net")
        assert networks.connect("net", "c1", "web", ip="10.0.0.50") == "10.0.0.50"
        with pytest.raises(NetworkError):
            networks.connect("net", "c2", "db", ip="10.0.0.50")
        with pytest.raises(NetworkError):
            networks.connect("net", "c2", "db", ip="192.168.1.5")
        with pytest.raises(NetworkError):
            networks.connect("net", "c2", "db", ip="not-an-ip")

    def test_connect_unknown_network(self, networks):
        """Test connecting to a missing network."""
        with pytest.raises(NetworkError, match="No such network"):
            networks.connect("missing", "c1", "web")

    def test_remove_with_endpoints(self, networks):
        """Test networks in use are only removed with force."""
        networks.create("net")
        networks.connect("net", "c1", "web")
        with pytest.raises(NetworkError, match="active endpoints: web"):
            networks.remove("net")
        networks.remove("net", force=True)
        assert not networks.exists("net")

    def test_disconnect(self, networks):
        """Test disconnecting frees the endpoint."""
        networks.create("net")
        networks.connect("net", "c1", "web")
        assert networks.disconnect("net", "c1")
        assert not networks.disconnect("net", "c1")
        assert networks.get("net").endpoints == {}

    def test_prune_keeps_bridge_and_used(self, networks):
        """Test prune removes only unused custom networks."""
        networks.create(DEFAULT_BRIDGE)
        networks.create("unused")
        networks.create("used")
        networks.connect("used", "c1", "web")
        assert networks.prune() == ["unused"]


class TestHosts:
    """Test /etc/hosts generation."""

    def test_entries(self, networks):
        """Test peers, aliases and the container's own hostname."""
        networks.create("net")
        networks.connect("net", "c1", "web", aliases=["frontend"])
        networks.connect("net", "c2", "db")
        networks.create("other")
        networks.connect("other", "c3", "isolated")

        lines = hosts_entries("c1", "abc123", networks)
        assert lines[0] == "127.0.0.1\tlocalhost"
        assert "10.0.0.2\tabc123 web frontend" in lines
        assert "10.0.0.3\tdb" in lines
        assert not any("isolated" in line for line in lines)

    def test_write_hosts_file(self, networks, tmp_path):
        """Test hosts and hostname files are written into the root filesystem."""
        networks.create("net")
        networks.connect("net", "c1", "web")
        path = write_hosts_file(str(tmp_path), "c1", "abc123", networks)

        assert path == str(tmp_path / "etc" / "hosts")
        assert "10.0.0.2\tabc123 web" in (tmp_path / "etc" / "hosts").read_text()
        assert (tmp_path / "etc" / "hostname").read_text() == "abc123\n"
