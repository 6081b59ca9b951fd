"""SEFAZ availability monitor.

One instance is created at process start. It owns the recurring probe
(an APScheduler background job), the last known status and the simulated
status used outside production. Every probe outcome goes through
``record_outcome``, which writes a ``sefaz_status`` row only when the
outcome differs from the last recorded one, so the table is a log of
transitions rather than of polls.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import insert, select

from ..config import Settings
from ..db.database import PersistenceGateway
from ..db.models.sefaz_status import SefazStatus
from ..errors import NfeMonitorError, SimulationDisabledError
from .transport import SefazTransport

logger = logging.getLogger(__name__)

STATUS_ENDPOINT = "nfeStatusServico"
ONLINE_SENTINEL = "online"

status_table = SefazStatus.__table__


class MonitorState(Enum):
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass
class ProbeResult:
    online: bool
    timestamp: datetime
    detail: Union[str, Dict[str, Any]]

    def detail_text(self) -> str:
        if isinstance(self.detail, str):
            return self.detail
        return json.dumps(self.detail, default=str)

    def to_dict(self) -> Dict[str, Any]:
        return {"online": self.online, "timestamp": self.timestamp, "detail": self.detail}


@dataclass
class StatusRecord:
    id: Optional[int]
    online: bool
    timestamp: datetime
    detail: Optional[str]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StatusRecord":
        return cls(
            id=row.get("id"),
            online=bool(row["online"]),
            timestamp=row["timestamp"],
            detail=row.get("detail"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "online": self.online, "timestamp": self.timestamp, "detail": self.detail}


@dataclass
class RemoteResponse:
    success: bool
    status_code: Optional[int] = None
    data: Any = None
    error: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def payload_signals_online(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    if data.get("online") is True:
        return True
    status = data.get("status")
    return isinstance(status, str) and status.strip().lower() == ONLINE_SENTINEL


def interpret_status_response(response: httpx.Response) -> tuple:
    """Map a status endpoint answer to ``(online, detail)``."""
    if response.status_code != 200:
        return False, f"HTTP {response.status_code}: {response.text}"
    try:
        data = response.json()
    except ValueError:
        return False, f"Malformed status payload: {response.text!r}"
    return payload_signals_online(data), response.text


class StatusMonitor:

    JOB_ID = "sefaz-status-probe"

    def __init__(
        self,
        settings: Settings,
        gateway: PersistenceGateway,
        transport: Optional[SefazTransport] = None,
        scheduler_factory: Callable[[], BackgroundScheduler] = lambda: BackgroundScheduler(daemon=True),
    ):
        self.settings = settings
        self.gateway = gateway
        self.transport = transport or SefazTransport(settings)
        self._scheduler_factory = scheduler_factory
        self._scheduler: Optional[BackgroundScheduler] = None
        self._schedule_lock = threading.Lock()

        # guards everything below
        self._state_lock = threading.Lock()
        self._state = MonitorState.UNKNOWN
        self._recorded: Optional[bool] = None
        self._seeded = False
        self._last_result: Optional[ProbeResult] = None
        self._simulated_status = True

    @property
    def status_url(self) -> str:
        return self.settings.resolved_status_url

    @property
    def simulated(self) -> bool:
        return self.settings.simulated

    @property
    def state(self) -> MonitorState:
        with self._state_lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    # -- probing ---------------------------------------------------------

    def probe(self) -> ProbeResult:
        """Check SEFAZ once and feed the outcome to the transition detector.

        Never raises for network trouble: failures come back as
        ``online=False`` with the error in ``detail``.
        """
        if self.simulated:
            result = self.get_simulated_status()
        else:
            result = self._probe_remote()

        self.record_outcome(result.online, result.detail_text(), result=result)
        return result

    def _probe_remote(self) -> ProbeResult:
        try:
            response = self.transport.send("GET", self.status_url)
        except httpx.HTTPError as e:
            logger.error(f"Error checking SEFAZ status: {e!r}")
            return ProbeResult(False, _utcnow(), f"Error checking status: {type(e).__name__}: {e}")

        online, detail = interpret_status_response(response)
        return ProbeResult(online, _utcnow(), detail)

    def record_outcome(self, online: bool, detail: str, result: Optional[ProbeResult] = None) -> bool:
        """Update the known status and persist it if it is a transition.

        Returns True when a row was written. The write happens under the
        state lock, so two concurrent probes can not both record the same
        transition. A failed write is logged and the in-memory status still
        moves on; the transition is written by the next probe that sees it.
        """
        with self._state_lock:
            self._state = MonitorState.ONLINE if online else MonitorState.OFFLINE
            self._last_result = result or ProbeResult(online, _utcnow(), detail)
            self._seed_from_store()

            if self._recorded is not None and self._recorded == online:
                return False

            try:
                self.gateway.execute(
                    insert(status_table).values(online=online, timestamp=_utcnow(), detail=detail)
                )
            except NfeMonitorError as e:
                logger.error(f"Error recording SEFAZ status change: {e.message} ({e.details})")
                return False

            previous = self._recorded
            self._recorded = online
            self._seeded = True
            logger.info(f"SEFAZ status changed: {previous} -> {online}")
            return True

    def _seed_from_store(self):
        # last recorded row survives restarts; start from it, not from scratch
        if self._seeded:
            return
        try:
            rows = self.gateway.execute(self._latest_statement(1))
        except NfeMonitorError as e:
            logger.warning(f"Could not read last recorded status: {e.message}")
            return
        self._recorded = bool(rows[0]["online"]) if rows else None
        self._seeded = True

    # -- simulation ------------------------------------------------------

    def get_simulated_status(self) -> ProbeResult:
        with self._state_lock:
            online = self._simulated_status
        return self._simulated_result(online)

    def _simulated_result(self, online: bool) -> ProbeResult:
        return ProbeResult(
            online=online,
            timestamp=_utcnow(),
            detail={
                "simulated": True,
                "environment": self.settings.environment,
                "message": "System operating normally" if online else "System unavailable",
            },
        )

    def toggle_simulated_status(self) -> bool:
        """Flip the simulated status and record it like a probe outcome.

        Refused when the monitor probes the real endpoint, so the status
        history only ever holds observed transitions.
        """
        if not self.simulated:
            raise SimulationDisabledError("Simulation is disabled: SEFAZ status is probed for real")
        with self._state_lock:
            self._simulated_status = not self._simulated_status
            online = self._simulated_status
        result = self._simulated_result(online)
        self.record_outcome(result.online, result.detail_text(), result=result)
        return result.online

    # -- scheduling ------------------------------------------------------

    def start_monitoring(self) -> bool:
        """Probe now, then every ``check_interval_seconds``.

        Returns False (and does nothing) if monitoring is already running.
        """
        with self._schedule_lock:
            if self._scheduler is not None:
                logger.info("SEFAZ monitoring already running")
                return False

            self.probe()

            scheduler = self._scheduler_factory()
            scheduler.add_job(
                self._scheduled_probe,
                trigger=IntervalTrigger(seconds=self.settings.check_interval_seconds),
                id=self.JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            self._scheduler = scheduler
            logger.info(f"SEFAZ monitoring started, interval {self.settings.check_interval_seconds}s")
            return True

    def stop_monitoring(self) -> bool:
        with self._schedule_lock:
            if self._scheduler is None:
                return False
            # a probe already in flight is left to finish
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("SEFAZ monitoring stopped")
            return True

    def _scheduled_probe(self):
        try:
            self.probe()
        except Exception as e:
            logger.exception(f"Scheduled SEFAZ probe failed: {e}")

    def shutdown(self):
        self.stop_monitoring()
        self.transport.close()

    # -- reads -----------------------------------------------------------

    def _latest_statement(self, limit: int):
        return (
            select(status_table.c.id, status_table.c.online, status_table.c.timestamp, status_table.c.detail)
            .order_by(status_table.c.timestamp.desc(), status_table.c.id.desc())
            .limit(limit)
        )

    def get_history(self, limit: int = 20) -> List[StatusRecord]:
        if limit <= 0:
            return []
        try:
            rows = self.gateway.execute(self._latest_statement(limit))
        except NfeMonitorError as e:
            logger.error(f"Error reading SEFAZ status history: {e.message}")
            return []
        return [StatusRecord.from_row(row) for row in rows]

    def get_current_status(self) -> StatusRecord:
        try:
            rows = self.gateway.execute(self._latest_statement(1))
        except NfeMonitorError as e:
            logger.error(f"Error reading current SEFAZ status: {e.message}")
            rows = None
            with self._state_lock:
                last = self._last_result
            if last is not None:
                return StatusRecord(None, last.online, last.timestamp, last.detail_text())

        if rows:
            return StatusRecord.from_row(rows[0])

        result = self.probe()
        return StatusRecord(None, result.online, result.timestamp, result.detail_text())

    # -- generic outbound calls ------------------------------------------

    def _auth_headers(self) -> Dict[str, str]:
        headers = {}
        if self.settings.api_token:
            headers["Authorization"] = f"Bearer {self.settings.api_token}"
        if self.settings.api_key:
            headers["X-API-Key"] = self.settings.api_key
        return headers

    def request(self, endpoint: str, payload: Any = None, method: str = "get") -> RemoteResponse:
        """Call a named SEFAZ endpoint (or a literal URL).

        Uses the probe's timeout and retry policy. Calls to the status
        endpoint also count as probes.
        """
        url = self.settings.endpoints.get(endpoint, endpoint)
        is_status = endpoint == STATUS_ENDPOINT or url == self.status_url
        headers = None if is_status else (self._auth_headers() or None)

        try:
            response = self.transport.send(method, url, payload=payload, headers=headers)
        except httpx.HTTPError as e:
            message = f"{type(e).__name__}: {e}"
            logger.error(f"Error calling SEFAZ endpoint {endpoint}: {message}")
            if is_status:
                self.record_outcome(False, f"Error checking status: {message}")
            return RemoteResponse(success=False, error=message)

        if is_status:
            online, detail = interpret_status_response(response)
            self.record_outcome(online, detail)

        data = _decode_body(response)
        if response.is_success:
            return RemoteResponse(success=True, status_code=response.status_code, data=data)

        logger.error(f"SEFAZ endpoint {endpoint} answered HTTP {response.status_code}")
        return RemoteResponse(
            success=False,
            status_code=response.status_code,
            data=data,
            error=f"HTTP {response.status_code}",
        )
