import pytest

from fn_deploy_kit.config import (
    AppConfig,
    DeploySettings,
    load_config_file,
    load_env_files,
)
from fn_deploy_kit.errors import ValidationError


_SETTINGS_ENV = [
    "FNDEPLOY_STATE_BACKEND",
    "FNDEPLOY_STATE_DIR",
    "FNDEPLOY_STATE_BUCKET",
    "FNDEPLOY_STATE_PREFIX",
    "FNDEPLOY_GCP_PROJECT",
    "FNDEPLOY_TCCLI",
    "FNDEPLOY_COMMAND_TIMEOUT",
    "FNDEPLOY_STRICT",
    "FNDEPLOY_RETRIES",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _SETTINGS_ENV:
        monkeypatch.delenv(key, raising=False)


def test_settings_defaults() -> None:
    settings = DeploySettings.from_env()

    assert settings.state_backend == "local"
    assert settings.state_dir == ".fndeploy/state"
    assert settings.strict is True
    assert settings.retries == 0


def test_gcs_backend_requires_bucket(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FNDEPLOY_STATE_BACKEND", "gcs")

    with pytest.raises(ValueError) as excinfo:
        DeploySettings.from_env()

    assert "FNDEPLOY_STATE_BUCKET" in str(excinfo.value)


def test_unknown_backend_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FNDEPLOY_STATE_BACKEND", "s3")

    with pytest.raises(ValueError):
        DeploySettings.from_env()


def test_env_local_overrides_env(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:  # noqa: ANN001
    (tmp_path / ".env").write_text("FNDEPLOY_RETRIES=1\nFNDEPLOY_TCCLI=/opt/tccli\n", encoding="utf-8")
    (tmp_path / ".env.local").write_text("FNDEPLOY_RETRIES=3\n", encoding="utf-8")
    # load_dotenv 가 os.environ 을 직접 바꾸므로 monkeypatch 로 원복 대상에 올려둔다.
    monkeypatch.setenv("FNDEPLOY_RETRIES", "0")
    monkeypatch.setenv("FNDEPLOY_TCCLI", "tccli")

    load_env_files(str(tmp_path))
    settings = DeploySettings.from_env()

    assert settings.retries == 3
    assert settings.tccli_path == "/opt/tccli"


def test_load_config_file(tmp_path) -> None:  # noqa: ANN001
    path = tmp_path / "fndeploy.yml"
    path.write_text("name: demo-app\nfunctionConf:\n  timeout: 10\n", encoding="utf-8")

    assert load_config_file(str(path)) == {"name": "demo-app", "functionConf": {"timeout": 10}}
    assert load_config_file(str(tmp_path / "missing.yml")) == {}


def test_load_config_file_requires_mapping(tmp_path) -> None:  # noqa: ANN001
    path = tmp_path / "fndeploy.yml"
    path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        load_config_file(str(path))


def test_app_config_defaults() -> None:
    cfg = AppConfig.from_mapping({})

    assert cfg.name is None
    assert cfg.region == "ap-guangzhou"
    assert cfg.runtime == "Nodejs8.9"
    assert cfg.function_conf.timeout == 3
    assert cfg.function_conf.memory_size == 128
    assert cfg.apigateway_conf.protocols == ["http"]
    assert cfg.apigateway_conf.environment == "release"


def test_function_name_is_an_alias_for_name() -> None:
    assert AppConfig.from_mapping({"functionName": "legacy-app"}).name == "legacy-app"


def test_unknown_keys_rejected_only_in_strict_mode() -> None:
    raw = {"name": "demo-app", "memory": 256, "functionConf": {"timeOut": 5}}

    with pytest.raises(ValidationError) as excinfo:
        AppConfig.from_mapping(raw)
    assert "memory" in str(excinfo.value)

    cfg = AppConfig.from_mapping(raw, strict=False)
    assert cfg.function_conf.timeout == 3


def test_function_environment_accepts_variables_form() -> None:
    cfg = AppConfig.from_mapping({"functionConf": {"environment": {"variables": {"A": 1}}}})

    assert cfg.function_conf.environment == {"A": "1"}


def test_bad_protocol_and_environment_are_rejected() -> None:
    with pytest.raises(ValidationError):
        AppConfig.from_mapping({"apigatewayConf": {"protocols": ["ftp"]}})
    with pytest.raises(ValidationError):
        AppConfig.from_mapping({"apigatewayConf": {"environment": "staging"}})


def test_custom_domain_accepts_single_mapping() -> None:
    cfg = AppConfig.from_mapping({"apigatewayConf": {"customDomain": {"domain": "api.example.com"}}})

    assert cfg.apigateway_conf.custom_domain == [{"domain": "api.example.com"}]

    with pytest.raises(ValidationError):
        AppConfig.from_mapping({"apigatewayConf": {"customDomain": [{"certificateId": "x"}]}})


def test_negative_timeout_is_rejected() -> None:
    with pytest.raises(ValidationError):
        AppConfig.from_mapping({"functionConf": {"timeout": -1}})
