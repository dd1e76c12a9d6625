# tests/test_config.py

import pytest
import yaml

from config import SystemConfig


def test_defaults():
    config = SystemConfig()
    assert config.index.incremental_threshold == 50
    assert config.index.rebuild_threshold == 5
    assert config.index.compression_ratio == 0.8
    assert config.grouping.similarity_threshold == 85.0
    assert config.fusion.enabled_levels == ["LOW", "MID", "HIGH"]
    config.validate()


def test_yaml_round_trip(tmp_path):
    path = tmp_path / "conf" / "config.yaml"
    config = SystemConfig()
    config.batch_size = 8
    config.index.rebuild_threshold = 3
    config.cache.policy = "lru"
    config.save(str(path))

    loaded = SystemConfig.load(str(path))
    assert loaded.batch_size == 8
    assert loaded.index.rebuild_threshold == 3
    assert loaded.cache.policy == "lru"
    assert loaded.memory.critical_mb == config.memory.critical_mb


def test_partial_yaml_keeps_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({'index': {'compression_ratio': 0.5, 'bogus': 1}}))
    loaded = SystemConfig.load(str(path))
    assert loaded.index.compression_ratio == 0.5
    assert loaded.index.incremental_threshold == 50
    assert not hasattr(loaded.index, 'bogus')


def test_missing_file_gives_defaults(tmp_path):
    assert SystemConfig.load(str(tmp_path / "absent.yaml")) == SystemConfig()


def test_options_struct():
    config = SystemConfig.from_options({
        'incrementalThreshold': 10,
        'rebuildThreshold': 2,
        'compressionRatio': 1.0,
        'enabledLevels': ["LOW", "MID"],
        'unknownOption': True,
    })
    assert config.index.incremental_threshold == 10
    assert config.fusion.enabled_levels == ["LOW", "MID"]
    assert config.to_options()['rebuildThreshold'] == 2


@pytest.mark.parametrize("options", [
    {'compressionRatio': 1.5},
    {'rebuildThreshold': 0},
    {'enabledLevels': ["LOW", "ULTRA"]},
    {'batchSize': 0},
])
def test_invalid_options_raise(options):
    with pytest.raises(ValueError):
        SystemConfig.from_options(options)
