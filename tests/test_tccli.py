from __future__ import annotations

import json

import pytest

from fn_deploy_kit.errors import ProviderError
from fn_deploy_kit.subprocess_utils import CommandError, RunResult
from fn_deploy_kit.tccli import TccliClient, is_transient_code


class _Runner:
    def __init__(self, stdout: str = "", error: CommandError | None = None) -> None:
        self.stdout = stdout
        self.error = error
        self.cmds = []
        self.payloads = []

    def __call__(self, cmd, *, timeout):  # noqa: ANN001, ANN204
        self.cmds.append(cmd)
        path = cmd[-1][len("file://"):]
        with open(path, "r", encoding="utf-8") as f:
            self.payloads.append(json.load(f))
        if self.error is not None:
            raise self.error
        return RunResult(returncode=0, stdout=self.stdout, stderr="")


def test_call_passes_params_as_input_json() -> None:
    runner = _Runner(stdout=json.dumps({"FunctionName": "demo", "RequestId": "r-1"}))
    client = TccliClient("tccli", runner=runner)

    resp = client.call("scf", "GetFunction", {"FunctionName": "demo"}, region="ap-guangzhou")

    assert resp["FunctionName"] == "demo"
    cmd = runner.cmds[0]
    assert cmd[:6] == ["tccli", "scf", "GetFunction", "--region", "ap-guangzhou", "--cli-input-json"]
    assert runner.payloads == [{"FunctionName": "demo"}]


def test_response_wrapper_and_error_payload() -> None:
    body = {"Response": {"Error": {"Code": "RequestLimitExceeded", "Message": "slow down"}}}
    client = TccliClient(runner=_Runner(stdout=json.dumps(body)))

    with pytest.raises(ProviderError) as excinfo:
        client.call("apigateway", "CreateService", {}, region="ap-guangzhou")

    assert excinfo.value.code == "RequestLimitExceeded"
    assert excinfo.value.transient


def test_command_failure_is_classified_by_code() -> None:
    err = CommandError(
        "failed",
        cmd=["tccli"],
        returncode=255,
        stderr="[TencentCloudSDKException] code:ResourceNotFound.Function message:function not found requestId:abc",
    )
    client = TccliClient(runner=_Runner(error=err))

    with pytest.raises(ProviderError) as excinfo:
        client.call("scf", "GetFunction", {"FunctionName": "demo"}, region="ap-guangzhou")

    assert excinfo.value.code == "ResourceNotFound.Function"
    assert excinfo.value.is_not_found
    assert not excinfo.value.transient
    assert "function not found" in str(excinfo.value)


def test_timeout_is_transient_and_missing_binary_is_not() -> None:
    timed_out = TccliClient(runner=_Runner(error=CommandError("slow", cmd=["tccli"], timed_out=True)))
    missing = TccliClient(runner=_Runner(error=CommandError("no tccli", cmd=["tccli"])))

    with pytest.raises(ProviderError) as slow:
        timed_out.call("scf", "ListFunctions", {}, region="ap-guangzhou")
    with pytest.raises(ProviderError) as absent:
        missing.call("scf", "ListFunctions", {}, region="ap-guangzhou")

    assert slow.value.transient
    assert not absent.value.transient


def test_unparseable_output_is_a_provider_error() -> None:
    client = TccliClient(runner=_Runner(stdout="not json"))

    with pytest.raises(ProviderError):
        client.call("scf", "GetFunction", {}, region="ap-guangzhou")


@pytest.mark.parametrize(
    "code, expected",
    [
        ("InternalError", True),
        ("ResourceInUse.Function", True),
        ("InvalidParameterValue.Runtime", False),
        (None, False),
    ],
)
def test_is_transient_code(code, expected) -> None:  # noqa: ANN001
    assert is_transient_code(code) is expected
