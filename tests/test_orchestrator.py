import pytest

from conftest import FakeProvider
from fn_deploy_kit import orchestrator
from fn_deploy_kit.errors import DeploymentError, ProviderError, ValidationError
from fn_deploy_kit.providers import ProviderRegistry
from fn_deploy_kit.state_store import InMemoryStateStore


def _function_outputs(name, conf):  # noqa: ANN001, ANN202
    return {
        "name": conf["name"],
        "namespace": "default",
        "timeout": conf["timeout"],
        "memory_size": conf["memory_size"],
    }


def _gateway_outputs(name, conf):  # noqa: ANN001, ANN202
    return {
        "service_id": "service-abc",
        "sub_domain": "service-abc.gz.apigw.tencentcs.com",
        "environment": conf["environment"],
        "protocols": list(conf["protocols"]),
    }


@pytest.fixture
def registry() -> ProviderRegistry:
    fn = FakeProvider("function")
    fn.outputs_fn = _function_outputs
    gw = FakeProvider("apigateway")
    gw.outputs_fn = _gateway_outputs
    return ProviderRegistry([fn, gw])


def test_gateway_url_prefers_https() -> None:
    outputs = {"sub_domain": "svc.example.com", "environment": "release", "protocols": ["http", "https"]}

    assert orchestrator.gateway_url(outputs) == "https://svc.example.com/release/"
    assert orchestrator.gateway_url(dict(outputs, protocols=["http"])) == "http://svc.example.com/release/"


def test_deploy_minimal_inputs(app_dir, registry: ProviderRegistry) -> None:  # noqa: ANN001
    store = InMemoryStateStore()

    result = orchestrator.deploy(
        {"code": str(app_dir), "functionConf": {"timeout": 10}},
        store=store,
        registry=registry,
    )

    assert len(result.resources) == 2
    assert result.resources["function"]["timeout"] == 10
    assert result.resources["function"]["memory_size"] == 128
    assert result.resources["apigateway"]["protocols"] == ["http"]
    assert result.outputs["url"].startswith("http://")
    assert result.outputs["function_name"] == result.deployment_id
    assert result.outputs["region"] == "ap-guangzhou"
    assert store.get_alias(orchestrator.DEFAULT_INSTANCE) == result.deployment_id


def test_redeploy_reuses_generated_name(app_dir, registry: ProviderRegistry) -> None:  # noqa: ANN001
    store = InMemoryStateStore()
    raw = {"code": str(app_dir)}

    first = orchestrator.deploy(raw, store=store, registry=registry)
    second = orchestrator.deploy(raw, store=store, registry=registry)

    assert first.deployment_id == second.deployment_id
    assert registry.get("function").created == 1  # type: ignore[attr-defined]


def test_failed_deploy_resumes_under_same_name(app_dir, registry: ProviderRegistry) -> None:  # noqa: ANN001
    store = InMemoryStateStore()
    raw = {"code": str(app_dir)}
    registry.get("apigateway").fail_on_apply["apigateway"] = ProviderError("busy", transient=True)  # type: ignore[attr-defined]

    with pytest.raises(DeploymentError) as excinfo:
        orchestrator.deploy(raw, store=store, registry=registry)

    result = orchestrator.deploy(raw, store=store, registry=registry)

    assert result.deployment_id == excinfo.value.deployment_id
    assert registry.get("function").created == 1  # type: ignore[attr-defined]


def test_disabled_gateway_has_no_url(app_dir, registry: ProviderRegistry) -> None:  # noqa: ANN001
    result = orchestrator.deploy(
        {"code": str(app_dir), "apigatewayConf": {"isDisabled": True}},
        store=InMemoryStateStore(),
        registry=registry,
    )

    assert list(result.resources) == ["function"]
    assert "url" not in result.outputs


def test_missing_app_js_makes_no_provider_calls(tmp_path, registry: ProviderRegistry) -> None:  # noqa: ANN001
    with pytest.raises(ValidationError):
        orchestrator.deploy({"code": str(tmp_path)}, store=InMemoryStateStore(), registry=registry)

    assert registry.get("function").calls == []  # type: ignore[attr-defined]


def test_teardown_uses_remembered_name(app_dir, registry: ProviderRegistry) -> None:  # noqa: ANN001
    store = InMemoryStateStore()
    deployed = orchestrator.deploy({"code": str(app_dir)}, store=store, registry=registry)

    result = orchestrator.teardown({}, store=store, registry=registry)

    assert result.deployment_id == deployed.deployment_id
    assert result.removed == ["apigateway", "function"]
    assert store.get(deployed.deployment_id) == {}
    assert store.get_alias(orchestrator.DEFAULT_INSTANCE) is None


def test_teardown_without_any_deployment(registry: ProviderRegistry) -> None:
    result = orchestrator.teardown({}, store=InMemoryStateStore(), registry=registry)

    assert result.deployment_id is None
    assert result.removed == []


def test_plan_all_marks_create_and_update(app_dir, registry: ProviderRegistry) -> None:  # noqa: ANN001
    store = InMemoryStateStore()
    raw = {"name": "demo-app", "code": str(app_dir)}

    before = orchestrator.plan_all(raw, store=store, registry=registry)
    orchestrator.deploy(raw, store=store, registry=registry)
    after = orchestrator.plan_all(raw, store=store, registry=registry)

    assert "1. function [function] CREATE" in before
    assert "2. apigateway [apigateway] CREATE (after: function)" in before
    assert "1. function [function] UPDATE" in after
    assert registry.get("function").created == 1  # type: ignore[attr-defined]


def test_summaries() -> None:
    from fn_deploy_kit.models import DeploymentResult, TeardownResult

    deploy_text = orchestrator.summarize_deploy(
        DeploymentResult("demo-app", resources={"function": {}}, outputs={"url": "http://x/release/"})
    )
    teardown_text = orchestrator.summarize_teardown(TeardownResult(None))

    assert "- url: http://x/release/" in deploy_text
    assert "(none)" in teardown_text


def test_changed_name_is_refused_while_old_deployment_exists(app_dir, registry: ProviderRegistry) -> None:  # noqa: ANN001
    store = InMemoryStateStore()
    orchestrator.deploy({"name": "app-a", "code": str(app_dir)}, store=store, registry=registry)
    created = registry.get("function").created  # type: ignore[attr-defined]

    with pytest.raises(ValidationError) as excinfo:
        orchestrator.deploy({"name": "app-b", "code": str(app_dir)}, store=store, registry=registry)
    with pytest.raises(ValidationError):
        orchestrator.plan_all({"name": "app-b", "code": str(app_dir)}, store=store, registry=registry)

    assert "app-a" in str(excinfo.value)
    assert store.get_alias(orchestrator.DEFAULT_INSTANCE) == "app-a"
    assert store.get("app-b") == {}
    assert registry.get("function").created == created  # type: ignore[attr-defined]

    removed = orchestrator.teardown({}, store=store, registry=registry)
    assert removed.deployment_id == "app-a"
    assert store.get("app-a") == {}

    renamed = orchestrator.deploy({"name": "app-b", "code": str(app_dir)}, store=store, registry=registry)
    assert renamed.deployment_id == "app-b"
    assert store.get_alias(orchestrator.DEFAULT_INSTANCE) == "app-b"
