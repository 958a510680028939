"""Tests for the Artifact Bus."""

import json

import pytest

from convoy.pipeline.application.artifact_bus import ArtifactBus
from convoy.pipeline.domain.exceptions import ArtifactUnavailable


class TestArtifactBus:
    """Test suite for ArtifactBus."""

    def test_get_unpublished_key_raises(self):
        """Test that reading a key nobody published raises ArtifactUnavailable."""
        bus = ArtifactBus()

        with pytest.raises(ArtifactUnavailable) as exc_info:
            bus.get("image_ref")

        assert exc_info.value.key == "image_ref"
        assert exc_info.value.kind == "artifact_unavailable"

    def test_later_put_overwrites(self):
        """Test that a second put replaces the value and producer."""
        bus = ArtifactBus()
        bus.put("image_ref", "app:1", producer="build")
        bus.put("image_ref", "app:2", producer="rebuild")

        assert bus.get("image_ref") == "app:2"
        assert bus.producer_of("image_ref") == "rebuild"
        assert len(bus) == 1

    def test_publish_commits_all_outputs(self):
        """Test that publish stores every output under the producing stage."""
        bus = ArtifactBus()
        bus.publish({"sbom": "/tmp/sbom.json", "vulns": "/tmp/trivy.json"}, producer="scan")

        assert "sbom" in bus and "vulns" in bus
        assert bus.producer_of("vulns") == "scan"

    def test_snapshot_is_read_only(self):
        """Test that snapshot cannot be used to mutate the bus."""
        bus = ArtifactBus()
        bus.put("k", "v")
        view = bus.snapshot()

        with pytest.raises(TypeError):
            view["k"] = "changed"
        bus.put("k2", "v2")
        assert "k2" not in view

    def test_save_writes_values_and_producers(self, tmp_path):
        """Test that save persists artifacts.json with producers."""
        bus = ArtifactBus()
        bus.put("image_ref", "app:1", producer="build")
        path = bus.save(tmp_path / "run" / "artifacts.json")

        data = json.loads(path.read_text())
        assert data == {"image_ref": {"value": "app:1", "producer": "build"}}
