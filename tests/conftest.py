# tests/conftest.py
from __future__ import annotations

import dataclasses
import os
import tempfile
from collections.abc import Callable, Iterator
from typing import Any

import httpx
import pytest
from sqlalchemy.engine import Engine

_TMP_DIR = tempfile.mkdtemp(prefix="nfe-monitor-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TMP_DIR, 'app.db')}")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MONITOR_AUTOSTART", "false")

from nfe_monitor.config import Settings
from nfe_monitor.db.database import PersistenceGateway, create_tables, make_engine
from nfe_monitor.services.document_lookup import DocumentLookupService
from nfe_monitor.services.status_monitor import StatusMonitor
from nfe_monitor.services.transport import SefazTransport

BASE_URL = "https://nfe.fazenda.mg.gov.br/nfe2/services"
STATUS_URL = f"{BASE_URL}/NFeStatusServico4"
QUERY_URL = f"{BASE_URL}/NFeConsultaProtocolo4"

ZERO_KEY = "0" * 44


class FakeUpstream:
    """httpx.MockTransport handler keyed by URL."""

    def __init__(self) -> None:
        self.calls: list[httpx.Request] = []
        self._handlers: dict[str, Any] = {}

    def on(self, url: str, handler: Any) -> None:
        # handler: httpx.Response, a list of them (served in order),
        # a callable(request) or an httpx exception class
        self._handlers[url] = handler

    def calls_to(self, url: str) -> list[httpx.Request]:
        return [call for call in self.calls if str(call.url) == url]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handler = self._handlers.get(str(request.url))
        if handler is None:
            return httpx.Response(404, text="not found")
        if isinstance(handler, list):
            handler = handler.pop(0) if len(handler) > 1 else handler[0]
        if isinstance(handler, type) and issubclass(handler, httpx.TransportError):
            raise handler("simulated transport failure", request=request)
        if callable(handler) and not isinstance(handler, httpx.Response):
            return handler(request)
        return handler


def make_nfe_xml(
    key: str = ZERO_KEY,
    issuer_cnpj: str = "11222333000181",
    total: str = "150.75",
    c_stat: str | None = "100",
    reason: str = "Autorizado o uso da NF-e",
    with_dest: bool = True,
) -> str:
    dest = (
        "<dest><CNPJ>99888777000166</CNPJ><xNome>Cliente Exemplo SA</xNome></dest>"
        if with_dest
        else ""
    )
    protocol = ""
    if c_stat is not None:
        protocol = (
            '<protNFe versao="4.00"><infProt>'
            f"<chNFe>{key}</chNFe><dhRecbto>2024-01-15T10:31:00-03:00</dhRecbto>"
            f"<cStat>{c_stat}</cStat><xMotivo>{reason}</xMotivo>"
            "</infProt></protNFe>"
        )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<nfeProc xmlns="http://www.portalfiscal.inf.br/nfe" versao="4.00">'
        f'<NFe><infNFe Id="NFe{key}" versao="4.00">'
        "<ide><serie>1</serie><nNF>1234</nNF><dhEmi>2024-01-15T10:30:00-03:00</dhEmi></ide>"
        f"<emit><CNPJ>{issuer_cnpj}</CNPJ><xNome>Emitente Exemplo Ltda</xNome></emit>"
        f"{dest}"
        f"<total><ICMSTot><vNF>{total}</vNF></ICMSTot></total>"
        "</infNFe></NFe>"
        f"{protocol}"
        "</nfeProc>"
    )


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        environment="test",
        database_url=f"sqlite:///{tmp_path / 'nfe.db'}",
        check_interval_seconds=300,
        http_timeout_seconds=1,
        max_retries=3,
        retry_delay_seconds=1,
        xml_export_dir=str(tmp_path / "xml_files"),
        monitor_autostart=False,
    )


@pytest.fixture()
def engine(settings: Settings) -> Iterator[Engine]:
    engine = make_engine(settings.database_url)
    create_tables(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def gateway(engine: Engine) -> PersistenceGateway:
    return PersistenceGateway(engine)


@pytest.fixture()
def broken_gateway(tmp_path) -> PersistenceGateway:
    # sqlite can not create a file inside a missing directory
    return PersistenceGateway(make_engine(f"sqlite:///{tmp_path / 'missing' / 'nfe.db'}"))


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def make_transport(upstream: FakeUpstream, sleeps: list[float]) -> Callable[[Settings], SefazTransport]:
    def _make(settings: Settings) -> SefazTransport:
        client = httpx.Client(transport=httpx.MockTransport(upstream))
        return SefazTransport(settings, client=client, sleep=sleeps.append)

    return _make


@pytest.fixture()
def make_monitor(
    settings: Settings,
    gateway: PersistenceGateway,
    make_transport: Callable[[Settings], SefazTransport],
) -> Iterator[Callable[..., StatusMonitor]]:
    created: list[StatusMonitor] = []

    def _make(gateway_override: PersistenceGateway | None = None, **overrides: Any) -> StatusMonitor:
        monitor_settings = dataclasses.replace(settings, **overrides)
        monitor = StatusMonitor(
            monitor_settings,
            gateway_override or gateway,
            transport=make_transport(monitor_settings),
        )
        created.append(monitor)
        return monitor

    yield _make

    for monitor in created:
        monitor.shutdown()


@pytest.fixture()
def monitor(make_monitor: Callable[..., StatusMonitor]) -> StatusMonitor:
    """Monitor probing the (mocked) SEFAZ endpoint for real."""
    return make_monitor(simulated_override=False)


@pytest.fixture()
def simulated_monitor(make_monitor: Callable[..., StatusMonitor]) -> StatusMonitor:
    return make_monitor(simulated_override=True)


@pytest.fixture()
def service(settings: Settings, gateway: PersistenceGateway, monitor: StatusMonitor) -> DocumentLookupService:
    return DocumentLookupService(settings, gateway, monitor)
