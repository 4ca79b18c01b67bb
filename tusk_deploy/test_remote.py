import base64
import unittest
from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError

from tusk_deploy import remote as mod
from tusk_deploy.config import DeployConfig
from tusk_deploy.errors import ConnectivityError


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class _FakeSSM:
    def __init__(self, invocations):
        self.sent = []
        self._invocations = list(invocations)

    def send_command(self, **params):
        self.sent.append(params)
        return {"Command": {"CommandId": "cmd-1"}}

    def get_command_invocation(self, CommandId, InstanceId):
        item = self._invocations.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class _SendDenied:
    def send_command(self, **_params):
        raise _client_error("InvalidInstanceId", "SendCommand")


class _Info:
    def __init__(self, ping_status=None, error=None):
        self._ping_status = ping_status
        self._error = error

    def describe_instance_information(self, **_kwargs):
        if self._error:
            raise self._error
        if self._ping_status is None:
            return {"InstanceInformationList": []}
        return {"InstanceInformationList": [{"PingStatus": self._ping_status}]}


def test_wrap_script_carries_body_base64_encoded():
    body = "echo 'it''s quoted' \"$HOME\"\n"
    lines = mod._wrap_script(body)

    encoded = lines[1].split("'")[1]
    assert base64.b64decode(encoded).decode() == body
    assert lines[-1] == "exit $TUSK_RC"


def test_exec_polls_until_terminal(config, target, clock):
    ssm = _FakeSSM(
        [
            _client_error("InvocationDoesNotExist", "GetCommandInvocation"),
            {"Status": "InProgress"},
            {"Status": "Success", "ResponseCode": 0, "StandardOutputContent": "hello\n"},
        ]
    )
    channel = mod.RemoteChannel(config, ssm, sleep=clock.sleep, clock=clock.monotonic)

    result = channel.exec(target, "echo hello\n", comment="probe:audit", timeout=60)

    assert result.ok
    assert result.stdout == "hello\n"
    sent = ssm.sent[0]
    assert sent["InstanceIds"] == [target.instance_id]
    assert sent["DocumentName"] == "AWS-RunShellScript"
    assert sent["Comment"] == "probe:audit"
    assert sent["Parameters"]["executionTimeout"] == ["60"]
    assert clock.sleeps == [2.0, 2.0]


def test_exec_reports_script_exit_code(config, target, clock):
    ssm = _FakeSSM([{"Status": "Failed", "ResponseCode": 3, "StandardErrorContent": "boom"}])
    channel = mod.RemoteChannel(config, ssm, sleep=clock.sleep, clock=clock.monotonic)

    result = channel.exec(target, "exit 3\n")

    assert result.exit_code == 3
    assert not result.ok
    assert result.tail() == "boom"


def test_undelivered_command_is_a_connectivity_error(config, target, clock):
    ssm = _FakeSSM([{"Status": "DeliveryTimedOut", "ResponseCode": -1}])
    channel = mod.RemoteChannel(config, ssm, sleep=clock.sleep, clock=clock.monotonic)

    with pytest.raises(ConnectivityError):
        channel.exec(target, "true\n")


def test_send_failure_is_a_connectivity_error(config, target):
    channel = mod.RemoteChannel(config, _SendDenied())

    with pytest.raises(ConnectivityError) as exc:
        channel.exec(target, "true\n")
    assert target.instance_id in exc.value.message


def test_ping_reads_ping_status(config, target):
    assert mod.RemoteChannel(config, _Info("Online")).ping(target) is True
    assert mod.RemoteChannel(config, _Info("ConnectionLost")).ping(target) is False
    assert mod.RemoteChannel(config, _Info()).ping(target) is False
    assert mod.RemoteChannel(config, _Info(error=_client_error("ThrottlingException", "Describe"))).ping(target) is False


def test_probe_connectivity_is_bounded(config, target, clock):
    channel = mod.RemoteChannel(config, _Info("ConnectionLost"), sleep=clock.sleep, clock=clock.monotonic)
    started = clock.now

    assert channel.probe_connectivity(target, 12) is False
    assert clock.now - started == pytest.approx(12)


def test_wait_budget_bounds_a_hung_command(config, target, clock):
    ssm = _FakeSSM([{"Status": "InProgress"}] * 10)
    channel = mod.RemoteChannel(config, ssm, sleep=clock.sleep, clock=clock.monotonic)
    started = clock.now

    with pytest.raises(ConnectivityError):
        channel.exec(target, "sleep 600\n", timeout=30, wait=4)

    assert clock.now - started == pytest.approx(4)
    assert ssm.sent[0]["Parameters"]["executionTimeout"] == ["4"]
    assert ssm.sent[0]["TimeoutSeconds"] == 30


class TestClientWiring(unittest.TestCase):
    @patch.object(mod, "_get_ssm")
    def test_ssm_client_created_lazily_for_region(self, mock_get_ssm):
        channel = mod.RemoteChannel(DeployConfig(region="eu-central-1"))
        mock_get_ssm.assert_not_called()

        self.assertIs(channel.ssm, mock_get_ssm.return_value)
        self.assertIs(channel.ssm, mock_get_ssm.return_value)
        mock_get_ssm.assert_called_once_with("eu-central-1")
