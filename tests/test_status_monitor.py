from __future__ import annotations

import random
import threading

import httpx
import pytest

from nfe_monitor.db.database import PersistenceGateway
from nfe_monitor.errors import SimulationDisabledError
from nfe_monitor.services.status_monitor import MonitorState, StatusMonitor

from .conftest import QUERY_URL, STATUS_URL, FakeUpstream


def recorded_states(gateway: PersistenceGateway) -> list[bool]:
    rows = gateway.execute("SELECT online FROM sefaz_status ORDER BY id")
    return [bool(row["online"]) for row in rows]


def assert_no_repeated_states(states: list[bool]) -> None:
    for previous, current in zip(states, states[1:]):
        assert previous != current


def online_response(online: bool) -> httpx.Response:
    return httpx.Response(200, json={"online": online})


@pytest.mark.parametrize(
    ("response", "expected"),
    [
        (httpx.Response(200, json={"online": True}), True),
        (httpx.Response(200, json={"status": "online"}), True),
        (httpx.Response(200, json={"status": "ONLINE"}), True),
        (httpx.Response(200, json={"online": False}), False),
        (httpx.Response(200, json={"status": "maintenance"}), False),
        (httpx.Response(503, json={"online": True}), False),
        (httpx.Response(200, text="<html>gateway</html>"), False),
    ],
)
def test_probe_interprets_status_payload(
    monitor: StatusMonitor, upstream: FakeUpstream, response: httpx.Response, expected: bool
) -> None:
    upstream.on(STATUS_URL, response)

    result = monitor.probe()

    assert result.online is expected
    assert result.detail


def test_only_transitions_are_recorded(
    monitor: StatusMonitor, upstream: FakeUpstream, gateway: PersistenceGateway
) -> None:
    outcomes = [True, True, False, False, False, True, False, False]
    upstream.on(STATUS_URL, [online_response(online) for online in outcomes])

    for _ in outcomes:
        monitor.probe()

    assert recorded_states(gateway) == [True, False, True, False]
    assert monitor.state is MonitorState.OFFLINE


def test_timeout_after_retries_resolves_offline(
    monitor: StatusMonitor, upstream: FakeUpstream, sleeps: list[float], gateway: PersistenceGateway
) -> None:
    upstream.on(STATUS_URL, httpx.ReadTimeout)

    result = monitor.probe()

    assert result.online is False
    assert "ReadTimeout" in result.detail
    assert len(upstream.calls) == 4
    assert sleeps == [1, 2, 4]
    assert recorded_states(gateway) == [False]


def test_initial_state_is_unknown(monitor: StatusMonitor) -> None:
    assert monitor.state is MonitorState.UNKNOWN


def test_restart_does_not_duplicate_last_recorded_state(
    make_monitor, gateway: PersistenceGateway
) -> None:
    first = make_monitor(simulated_override=True)
    first.probe()
    second = make_monitor(simulated_override=True)

    second.probe()

    assert recorded_states(gateway) == [True]


def test_toggle_twice_returns_to_original_and_records_both(
    simulated_monitor: StatusMonitor, gateway: PersistenceGateway
) -> None:
    original = simulated_monitor.get_simulated_status().online

    first = simulated_monitor.toggle_simulated_status()
    second = simulated_monitor.toggle_simulated_status()

    assert first is not original
    assert second is original
    assert recorded_states(gateway) == [first, second]


def test_simulated_probe_does_not_touch_network(
    simulated_monitor: StatusMonitor, upstream: FakeUpstream
) -> None:
    result = simulated_monitor.probe()

    assert result.online is True
    assert result.detail["simulated"] is True
    assert upstream.calls == []


def test_history_is_limited_and_newest_first(
    simulated_monitor: StatusMonitor,
) -> None:
    for _ in range(5):
        simulated_monitor.toggle_simulated_status()

    history = simulated_monitor.get_history(3)

    assert len(history) == 3
    assert [record.timestamp for record in history] == sorted(
        (record.timestamp for record in history), reverse=True
    )
    assert history[0].id > history[1].id > history[2].id
    assert simulated_monitor.get_history(0) == []


def test_history_fails_soft_when_store_is_down(make_monitor, broken_gateway: PersistenceGateway) -> None:
    monitor = make_monitor(gateway_override=broken_gateway, simulated_override=True)

    assert monitor.get_history(10) == []


def test_persistence_failure_is_swallowed(make_monitor, broken_gateway: PersistenceGateway) -> None:
    monitor = make_monitor(gateway_override=broken_gateway, simulated_override=True)

    assert monitor.toggle_simulated_status() is False
    assert monitor.state is MonitorState.OFFLINE

    current = monitor.get_current_status()
    assert current.online is False
    assert current.id is None


def test_current_status_seeds_history_when_empty(
    simulated_monitor: StatusMonitor, gateway: PersistenceGateway
) -> None:
    current = simulated_monitor.get_current_status()

    assert current.online is True
    assert recorded_states(gateway) == [True]

    again = simulated_monitor.get_current_status()
    assert again.id is not None
    assert recorded_states(gateway) == [True]


def test_start_monitoring_is_idempotent(
    simulated_monitor: StatusMonitor, gateway: PersistenceGateway
) -> None:
    assert simulated_monitor.start_monitoring() is True
    assert simulated_monitor.start_monitoring() is False

    assert simulated_monitor.is_running
    assert len(simulated_monitor._scheduler.get_jobs()) == 1
    # the immediate probe ran once
    assert recorded_states(gateway) == [True]

    assert simulated_monitor.stop_monitoring() is True
    assert simulated_monitor.stop_monitoring() is False
    assert not simulated_monitor.is_running


def test_stop_when_not_running_is_safe(simulated_monitor: StatusMonitor) -> None:
    assert simulated_monitor.stop_monitoring() is False


def test_monitoring_can_be_restarted(simulated_monitor: StatusMonitor) -> None:
    simulated_monitor.start_monitoring()
    simulated_monitor.stop_monitoring()

    assert simulated_monitor.start_monitoring() is True
    assert simulated_monitor.is_running


def test_status_endpoint_requests_feed_transition_detector(
    monitor: StatusMonitor, upstream: FakeUpstream, gateway: PersistenceGateway
) -> None:
    upstream.on(STATUS_URL, [httpx.Response(200, json={"status": "online"}), httpx.ConnectError])

    ok = monitor.request("nfeStatusServico")
    failed = monitor.request("nfeStatusServico")

    assert ok.success is True
    assert failed.success is False
    assert failed.error
    assert recorded_states(gateway) == [True, False]


def test_request_sends_credentials_to_query_endpoint(
    make_monitor, upstream: FakeUpstream
) -> None:
    monitor = make_monitor(simulated_override=False, api_token="secret-token", api_key="key-123")
    upstream.on(QUERY_URL, httpx.Response(200, json={"ok": True}))

    response = monitor.request("nfeConsultaProtocolo", {"chaveAcesso": "1"}, "post")

    assert response.success is True
    assert response.data == {"ok": True}
    request = upstream.calls_to(QUERY_URL)[0]
    assert request.method == "POST"
    assert request.headers["Authorization"] == "Bearer secret-token"
    assert request.headers["X-API-Key"] == "key-123"


def test_request_reports_http_failure_without_retry(
    monitor: StatusMonitor, upstream: FakeUpstream, sleeps: list[float], gateway: PersistenceGateway
) -> None:
    upstream.on(QUERY_URL, httpx.Response(500, json={"erro": "falha interna"}))

    response = monitor.request("nfeConsultaProtocolo", {"chaveAcesso": "1"}, "post")

    assert response.success is False
    assert response.status_code == 500
    assert response.data == {"erro": "falha interna"}
    assert sleeps == []
    # not the status endpoint: no transition recorded
    assert recorded_states(gateway) == []


def test_concurrent_outcomes_never_repeat_a_state(
    simulated_monitor: StatusMonitor, gateway: PersistenceGateway
) -> None:
    def worker(seed: int) -> None:
        rng = random.Random(seed)
        for _ in range(25):
            simulated_monitor.record_outcome(rng.choice([True, False]), f"worker {seed}")

    threads = [threading.Thread(target=worker, args=(seed,)) for seed in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    states = recorded_states(gateway)
    assert states
    assert_no_repeated_states(states)


def test_toggle_is_refused_when_probing_for_real(
    monitor: StatusMonitor, upstream: FakeUpstream, gateway: PersistenceGateway
) -> None:
    upstream.on(STATUS_URL, lambda request: online_response(True))
    monitor.probe()

    with pytest.raises(SimulationDisabledError):
        monitor.toggle_simulated_status()
    monitor.probe()

    assert recorded_states(gateway) == [True]
    assert monitor.state is MonitorState.ONLINE


def test_concurrent_toggles_each_see_their_own_flip(
    simulated_monitor: StatusMonitor, gateway: PersistenceGateway
) -> None:
    results: list[bool] = []
    results_lock = threading.Lock()

    def worker() -> None:
        online = simulated_monitor.toggle_simulated_status()
        with results_lock:
            results.append(online)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    # starting from online, eight flips yield four of each value
    assert results.count(True) == 4
    assert results.count(False) == 4
    assert simulated_monitor.get_simulated_status().online is True
    assert_no_repeated_states(recorded_states(gateway))
