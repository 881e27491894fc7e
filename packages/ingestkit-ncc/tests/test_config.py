"""Unit tests for ingestkit_ncc.config -- configuration model."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from ingestkit_ncc.config import NCCIngestConfig


class TestDefaults:
    """Test that default values are correct."""

    def test_parser_version(self):
        assert NCCIngestConfig().parser_version == "ingestkit_ncc:1.0.0"

    def test_folder_names(self):
        config = NCCIngestConfig()
        assert config.source_folder_names == ["xml", "xmls"]
        assert config.asset_folder_names == ["images", "image"]

    def test_document_root_tags(self):
        assert NCCIngestConfig().document_root_tags == ["clause", "specification"]

    def test_batching(self):
        config = NCCIngestConfig()
        assert config.batch_size == 5
        assert config.time_budget_seconds == 50.0

    def test_asset_key_prefix(self):
        assert NCCIngestConfig().asset_key_prefix == "ncc"

    def test_enqueue_unset(self):
        config = NCCIngestConfig()
        assert config.enqueue_url is None
        assert config.enqueue_token is None


class TestValidation:
    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            NCCIngestConfig(batch_size=0)

    def test_time_budget_must_be_positive(self):
        with pytest.raises(ValidationError):
            NCCIngestConfig(time_budget_seconds=0)


class TestFromFile:
    def test_yaml(self, tmp_path):
        fp = tmp_path / "config.yaml"
        fp.write_text("batch_size: 12\nasset_key_prefix: codes\n")
        config = NCCIngestConfig.from_file(str(fp))
        assert config.batch_size == 12
        assert config.asset_key_prefix == "codes"
        assert config.max_depth == 100

    def test_yml_extension(self, tmp_path):
        fp = tmp_path / "config.yml"
        fp.write_text("time_budget_seconds: 5\n")
        assert NCCIngestConfig.from_file(str(fp)).time_budget_seconds == 5.0

    def test_json(self, tmp_path):
        fp = tmp_path / "config.json"
        fp.write_text(json.dumps({"enqueue_url": "http://queue.local/enqueue"}))
        config = NCCIngestConfig.from_file(str(fp))
        assert config.enqueue_url == "http://queue.local/enqueue"

    def test_empty_yaml_keeps_defaults(self, tmp_path):
        fp = tmp_path / "empty.yaml"
        fp.write_text("")
        assert NCCIngestConfig.from_file(str(fp)) == NCCIngestConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            NCCIngestConfig.from_file(str(tmp_path / "nope.yaml"))

    def test_unknown_extension(self, tmp_path):
        fp = tmp_path / "config.toml"
        fp.write_text("batch_size = 3")
        with pytest.raises(ValueError, match="Unsupported config file extension"):
            NCCIngestConfig.from_file(str(fp))
