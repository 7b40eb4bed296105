from unittest import mock

import pytest
import requests

from simulators.field_node_sim.lib.control import ControlDirective
from simulators.field_node_sim.lib.uplink import RetrievalError, TelemetryUplink


def response(status: int = 200, body=None, bad_json: bool = False):
    r = mock.Mock(spec=requests.Response)
    r.status_code = status
    r.ok = status < 400
    if bad_json:
        r.json.side_effect = ValueError("no json")
    else:
        r.json.return_value = body
    if status >= 400:
        r.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return r


@pytest.fixture
def session():
    return mock.Mock(spec=requests.Session)


def test_publish_posts_snapshot_with_timeout(session):
    session.post.return_value = response(body={"status": "success", "force_pump": False})
    uplink = TelemetryUplink("http://ground:8000/", timeout_s=2.0, session=session)

    assert uplink.publish({"node_id": "x"}) is None
    session.post.assert_called_once_with("http://ground:8000/telemetry", json={"node_id": "x"}, timeout=2.0)


def test_publish_returns_force_directive(session):
    session.post.return_value = response(body={"status": "success", "force_pump": True})
    uplink = TelemetryUplink(session=session)
    assert uplink.publish({}) == ControlDirective(force_pump=True)


@pytest.mark.parametrize("failure", [
    requests.ConnectionError("refused"),
    requests.Timeout("slow"),
])
def test_publish_network_failure_degrades(session, failure):
    session.post.side_effect = failure
    uplink = TelemetryUplink(session=session)
    assert uplink.publish({"node_id": "x"}) is None


@pytest.mark.parametrize("resp", [
    response(status=500, body={"force_pump": True}),
    response(bad_json=True),
    response(body=["not", "a", "dict"]),
])
def test_publish_bad_response_degrades(session, resp):
    session.post.return_value = resp
    uplink = TelemetryUplink(session=session)
    assert uplink.publish({}) is None


def test_fetch_returns_records(session):
    records = [{"node_id": "a"}, {"node_id": "b"}]
    session.get.return_value = response(body=records)
    uplink = TelemetryUplink("http://ground:8000", session=session)
    assert uplink.fetch(limit=2) == records
    session.get.assert_called_once_with("http://ground:8000/telemetry", params={"limit": 2}, timeout=3.0)


def test_fetch_placeholder_is_not_an_error(session):
    session.get.return_value = response(body=[{"node_id": "NO_DATA"}])
    uplink = TelemetryUplink(session=session)
    assert uplink.fetch()[0]["node_id"] == "NO_DATA"


@pytest.mark.parametrize("setup", ["unreachable", "http_error", "bad_json", "wrong_shape"])
def test_fetch_failures_raise_retrieval_error(session, setup):
    if setup == "unreachable":
        session.get.side_effect = requests.ConnectionError("refused")
    elif setup == "http_error":
        session.get.return_value = response(status=503)
    elif setup == "bad_json":
        session.get.return_value = response(bad_json=True)
    else:
        session.get.return_value = response(body={"detail": "nope"})
    uplink = TelemetryUplink(session=session)
    with pytest.raises(RetrievalError):
        uplink.fetch()


def test_invalid_timeout():
    with pytest.raises(ValueError):
        TelemetryUplink(timeout_s=0)
