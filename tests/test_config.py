from pathlib import Path

import pytest

from awsstack import resources_from_config
from config import Config, load_config

EXAMPLE_CONFIG = Path(__file__).resolve().parent.parent / "config.yaml"

CONFIG_YAML = """
team: platform
service: orders
environment: dev
region: us-east-1
tags:
  Owner: platform-team
resources:
  - name: orders-dlq
    builder: queue
  - name: orders
    builder: queue
    values:
      visibility_timeout: 60
      dead_letter_queue: ref:orders-dlq
      max_receive_count: 5
"""


def test_load_config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML)
    config = load_config(str(path))
    assert config.team == "platform"
    assert config.tags == {"Owner": "platform-team"}
    assert [r.name for r in config.resources] == ["orders-dlq", "orders"]
    assert config.resources[0].values == {}
    assert config.resources[1].values["dead_letter_queue"] == "ref:orders-dlq"


def test_missing_required_key():
    with pytest.raises(ValueError, match="region"):
        Config.from_dict({"team": "t", "service": "s", "environment": "dev"})


def test_declaration_needs_builder():
    data = {"team": "t", "service": "s", "environment": "dev", "region": "us-east-1",
            "resources": [{"name": "orders"}]}
    with pytest.raises(ValueError, match="builder"):
        Config.from_dict(data)


def test_non_mapping_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError, match="mapping"):
        load_config(str(path))


def test_shipped_example_config_is_valid():
    config = load_config(str(EXAMPLE_CONFIG))
    assert {r.builder for r in config.resources} >= {"queue", "topic", "subscription", "bucket"}
    resources = resources_from_config(config)
    assert [r.identity for r in resources] == [d.name for d in config.resources]
