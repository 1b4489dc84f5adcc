import json
from types import SimpleNamespace

from minigrid.models.settings_models import GridSettings, SortBy, SortDirection
from minigrid.services import settings_service
from minigrid.services.settings_service import (
    JsonFileBackend,
    MemoryBackend,
    RedisBackend,
    SettingsStore,
    build_settings_store,
)


def test_missing_keys_fall_back_to_defaults():
    settings = SettingsStore(MemoryBackend()).load_grid_settings()
    assert settings.interval == "1m"
    assert settings.throttle_delay == 1000
    assert settings.sort_by == SortBy.NONE
    assert settings.sort_direction == SortDirection.DESC
    assert settings.volume_anomaly_ratio is None
    assert settings.alert_log == []


def test_values_are_namespaced_and_json_encoded():
    backend = MemoryBackend()
    store = SettingsStore(backend)
    store.set("throttleDelay", 250)
    assert backend.data == {"minichart_grid_throttleDelay": "250"}
    assert store.get("throttleDelay") == 250


def test_corrupt_values_fall_back_per_field_and_unknown_keys_are_ignored():
    backend = MemoryBackend({
        "minichart_grid_interval": json.dumps("5m"),
        "minichart_grid_throttleDelay": "{not json",
        "minichart_grid_sortBy": json.dumps("marketcap"),
        "minichart_grid_legacyKey": json.dumps(True),
    })
    settings = SettingsStore(backend).load_grid_settings()
    assert settings.interval == "5m"
    assert settings.throttle_delay == 1000
    assert settings.sort_by == SortBy.NONE


def test_save_field_roundtrips_through_storage_key():
    backend = MemoryBackend()
    store = SettingsStore(backend)
    settings = GridSettings(sortBy="volume", sortDirection=1, symbolAlerts={"BTCUSDT": [100.5]})
    for name in ("sort_by", "sort_direction", "symbol_alerts"):
        store.save_field(settings, name)

    assert json.loads(backend.data["minichart_grid_sortBy"]) == "volume"
    assert json.loads(backend.data["minichart_grid_sortDirection"]) == 1
    reloaded = store.load_grid_settings()
    assert reloaded.sort_by == SortBy.VOLUME
    assert reloaded.sort_direction == SortDirection.ASC
    assert reloaded.symbol_alerts == {"BTCUSDT": [100.5]}


def test_json_file_backend_persists_across_instances(tmp_path):
    path = tmp_path / "settings.json"
    SettingsStore(JsonFileBackend(str(path))).set("gridColumns", 6)
    assert json.loads(path.read_text())["minichart_grid_gridColumns"] == "6"

    settings = SettingsStore(JsonFileBackend(str(path))).load_grid_settings()
    assert settings.grid_columns == 6


def test_json_file_backend_tolerates_garbage_file(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("[1, 2, 3]")
    backend = JsonFileBackend(str(path))
    assert backend.get("minichart_grid_interval") is None


def test_unconnected_redis_backend_degrades_to_defaults():
    backend = RedisBackend("redis://localhost:1/0")
    assert backend.get("anything") is None
    backend.set("anything", "1")


def test_build_settings_store_selects_backend(tmp_path):
    cfg = SimpleNamespace(
        SETTINGS_BACKEND="memory",
        SETTINGS_FILE=str(tmp_path / "s.json"),
        SETTINGS_NAMESPACE="grid_",
        REDIS_URL="redis://localhost:1/0",
    )
    store = build_settings_store(cfg)
    assert isinstance(store.backend, MemoryBackend)
    assert store.namespace == "grid_"

    cfg.SETTINGS_BACKEND = "json"
    assert isinstance(build_settings_store(cfg).backend, JsonFileBackend)


def test_public_view_uses_persisted_key_names():
    public = GridSettings().to_public()
    assert public["throttleDelay"] == 1000
    assert public["sortDirection"] == -1
    assert "alertLog" not in public
    assert GridSettings.field_name("volumeAnomalyAlertsRatio") == "volume_anomaly_ratio"
    assert GridSettings.field_name("chart_height") == "chart_height"
    assert GridSettings.field_name("nope") is None


def test_json_file_backend_removes_temp_file_when_write_fails(tmp_path, monkeypatch):
    path = tmp_path / "settings.json"
    backend = JsonFileBackend(str(path))

    def _fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(settings_service.os, "replace", _fail_replace)
    backend.set("minichart_grid_gridColumns", "6")

    assert not path.exists()
    assert list(tmp_path.glob(".settings-*")) == []
    assert backend.get("minichart_grid_gridColumns") == "6"
