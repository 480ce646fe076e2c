"""Tests for tinydock.volume."""

import os

import pytest

from tinydock.metadata import MetadataStore, MountConfig
from tinydock.volume import VolumeError, VolumeManager, mount_into_rootfs


@pytest.fixture
def volumes():
    return VolumeManager()


class TestVolumeManager:
    """Test named volume management."""

    def test_create(self, volumes):
        """Test a volume gets a data directory."""
        volume = volumes.create("pgdata", labels={"app": "db"})
        assert os.path.isdir(volume.mountpoint)
        assert volume.mountpoint.endswith(os.path.join("pgdata", "_data"))
        assert volumes.get("pgdata").labels == {"app": "db"}

    def test_duplicate(self, volumes):
        """Test duplicate names."""
        volumes.create("data")
        with pytest.raises(VolumeError, match="already exists"):
            volumes.create("data")
        assert volumes.create("data", exist_ok=True).name == "data"

    @pytest.mark.parametrize("name", ["", "../escape", "-dash", "a b"])
    def test_invalid_name(self, volumes, name):
        """Test volume names are validated."""
        with pytest.raises(VolumeError):
            volumes.create(name)

    def test_unsupported_driver(self, volumes):
        """Test only the local driver exists."""
        with pytest.raises(VolumeError):
            volumes.create("data", driver="nfs")

    def test_remove_in_use(self, volumes):
        """Test volumes used by a container are only removed with force."""
        volume = volumes.create("data")
        MetadataStore().create(
            name="user",
            mounts=[MountConfig(type="volume", source="data", target="/data", path=volume.mountpoint)],
        )
        assert volumes.in_use("data") == ["user"]
        with pytest.raises(VolumeError, match="in use by: user"):
            volumes.remove("data")
        volumes.remove("data", force=True)
        assert volumes.get("data") is None

    def test_remove_missing(self, volumes):
        """Test removing an unknown volume."""
        with pytest.raises(VolumeError, match="No such volume"):
            volumes.remove("missing")

    def test_prune(self, volumes):
        """Test prune removes unused volumes only."""
        volumes.create("unused")
        used = volumes.create("used")
        MetadataStore().create(
            mounts=[MountConfig(type="volume", source="used", target="/data", path=used.mountpoint)],
        )
        assert volumes.prune() == ["unused"]
        assert [v.name for v in volumes.list()] == ["used"]


class TestMountIntoRootfs:
    """Test realising mounts in a root filesystem."""

    def test_named_volume_seeded_once(self, volumes, tmp_path):
        """Test image content is copied into an empty volume only."""
        rootfs = tmp_path / "rootfs"
        (rootfs / "data").mkdir(parents=True)
        (rootfs / "data" / "seed.txt").write_text("seed")
        volume = volumes.create("data")
        mount = MountConfig(type="volume", source="data", target="/data", path=volume.mountpoint)

        mount_into_rootfs(str(rootfs), mount)
        assert os.path.islink(rootfs / "data")
        assert (rootfs / "data" / "seed.txt").read_text() == "seed"

        other = tmp_path / "other"
        (other / "data").mkdir(parents=True)
        (other / "data" / "different.txt").write_text("x")
        mount_into_rootfs(str(other), mount)
        assert not os.path.exists(os.path.join(volume.mountpoint, "different.txt"))

    def test_bind_creates_source(self, tmp_path):
        """Test a missing bind source is created."""
        rootfs = tmp_path / "rootfs"
        rootfs.mkdir()
        source = tmp_path / "host" / "dir"
        mount = MountConfig(type="bind", source=str(source), target="/mnt", path=str(source))
        mount_into_rootfs(str(rootfs), mount)
        assert source.is_dir()
        assert os.path.realpath(rootfs / "mnt") == os.path.realpath(source)

    def test_mount_over_root_rejected(self, volumes, tmp_path):
        """Test the root itself cannot be a mount target."""
        volume = volumes.create("data")
        mount = MountConfig(type="volume", source="data", target="/", path=volume.mountpoint)
        with pytest.raises(VolumeError):
            mount_into_rootfs(str(tmp_path), mount)
