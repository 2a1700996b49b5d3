from pathlib import Path

import pytest
from pydantic import ValidationError

from medvoy_relay.config import RelayConfig, load_config


def _capability(name: str = "search_flights", **overrides: object) -> dict[str, object]:
    cap: dict[str, object] = {"name": name, "description": "d", "url": "http://caps.test/x"}
    cap.update(overrides)
    return cap


def test_defaults_are_filled() -> None:
    cfg = RelayConfig.model_validate({})

    assert cfg.restream_tools == "omit"
    assert cfg.stream_keepalive_seconds == 15.0
    assert cfg.cors_allow_origins == ["*"]
    assert cfg.logging is not None and cfg.logging.level == "INFO"
    assert cfg.capabilities == []


def test_capability_defaults_to_silent_degrade() -> None:
    cfg = RelayConfig.model_validate({"capabilities": [_capability(on_failure=None, extra_body=None)]})

    cap = cfg.capability("search_flights")
    assert cap is not None
    assert cap.on_failure == []
    assert cap.extra_body == {}
    assert cap.options_format == "raw"
    assert cap.parameters == {"type": "object", "properties": {}}
    assert cfg.capability("missing") is None


def test_duplicate_capability_names_are_rejected() -> None:
    with pytest.raises(ValidationError, match="duplicate capability names: search_flights"):
        RelayConfig.model_validate({"capabilities": [_capability(), _capability()]})


def test_capability_name_must_be_a_tool_identifier() -> None:
    with pytest.raises(ValidationError):
        RelayConfig.model_validate({"capabilities": [_capability(name="search flights")]})


def test_scrape_step_requires_url() -> None:
    with pytest.raises(ValidationError, match="requires url"):
        RelayConfig.model_validate({"capabilities": [_capability(on_failure=[{"kind": "scrape"}])]})


def test_unknown_fallback_kind_is_rejected() -> None:
    with pytest.raises(ValidationError):
        RelayConfig.model_validate({"capabilities": [_capability(on_failure=[{"kind": "retry"}])]})


def test_unknown_top_level_keys_are_rejected() -> None:
    with pytest.raises(ValidationError):
        RelayConfig.model_validate({"max_tool_loops": 4})


def test_service_base_url_needs_port() -> None:
    with pytest.raises(ValidationError, match="host and port"):
        RelayConfig.model_validate({"service_base_url": "http://localhost"})


def test_load_config_merges_yaml_and_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "relay.yaml"
    path.write_text(
        "upstream_base_url: http://from-file\n"
        "upstream_model: file-model\n"
        "logging:\n"
        "  level: DEBUG\n"
        "capabilities:\n"
        "  - name: get_cost_estimate\n"
        "    description: cost\n"
        "    url: http://caps.test/cost\n"
        "    on_failure:\n"
        "      - kind: reprompt\n"
        "      - kind: apology\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("MEDVOY_RELAY_UPSTREAM_API_KEY", "env-key")
    monkeypatch.setenv("MEDVOY_RELAY_UPSTREAM_CONNECT_RETRIES", "3")
    monkeypatch.setenv("MEDVOY_RELAY_STREAM_KEEPALIVE_SECONDS", "2.5")
    monkeypatch.setenv("MEDVOY_RELAY_RESTREAM_TOOLS", "Redeclare")
    monkeypatch.setenv("MEDVOY_RELAY_LOG_JSON", "yes")

    cfg = load_config(str(path))

    assert cfg.upstream_base_url == "http://from-file"
    assert cfg.upstream_api_key == "env-key"
    assert cfg.upstream_model == "file-model"
    assert cfg.upstream_connect_retries == 3
    assert cfg.stream_keepalive_seconds == 2.5
    assert cfg.restream_tools == "redeclare"
    assert cfg.logging is not None
    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.json_logs is True
    assert [step.kind for step in cfg.capabilities[0].on_failure] == ["reprompt", "apology"]


def test_config_path_comes_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "other.yaml"
    path.write_text("upstream_model: env-path-model\n", encoding="utf-8")
    monkeypatch.setenv("MEDVOY_RELAY_CONFIG", str(path))

    assert load_config().upstream_model == "env-path-model"


def test_missing_config_file_means_env_only(tmp_path: Path) -> None:
    cfg = load_config(str(tmp_path / "absent.yaml"))
    assert cfg.upstream_base_url is None


def test_non_mapping_yaml_root_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ValueError, match="Config root must be object"):
        load_config(str(path))
