"""Socket-table probing for service ports."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, NamedTuple, Optional

import psutil

from .models import PortHolder, PortProbe

logger = logging.getLogger(__name__)


class _Connection(NamedTuple):
    laddr: Any
    status: str
    pid: Optional[int]


def _conn_port(address) -> Optional[int]:
    if not address:
        return None
    port = getattr(address, "port", None)
    if port is None and isinstance(address, tuple) and len(address) > 1:
        port = address[1]
    return port


class PortProber:
    """
    Reports whether anything is bound to a TCP port, and who.

    A probe is a single socket-table read; callers own any retry policy.
    """

    def probe(self, port: int) -> PortProbe:
        """
        Inspect the socket table for a port.

        Args:
            port: TCP port number

        Returns:
            PortProbe with listening/established flags and the listening processes
        """
        connections = self._connections()
        listening = False
        established = False
        holder_pids: List[Optional[int]] = []
        for conn in connections:
            if _conn_port(conn.laddr) != port:
                continue
            if conn.status == psutil.CONN_LISTEN:
                listening = True
                if conn.pid not in holder_pids:
                    holder_pids.append(conn.pid)
            elif conn.status == psutil.CONN_ESTABLISHED:
                established = True

        return PortProbe(
            port=port,
            listening=listening,
            established=established,
            holders=tuple(self._describe(pid) for pid in holder_pids),
        )

    def _connections(self) -> Iterable:
        try:
            return psutil.net_connections(kind="tcp")
        except psutil.AccessDenied:
            # System-wide table needs privileges on some platforms
            logger.debug("System-wide socket table denied; scanning per process")
            return self._per_process_connections()

    @staticmethod
    def _per_process_connections() -> List[_Connection]:
        rows: List[_Connection] = []
        for proc in psutil.process_iter(["pid"]):
            try:
                for conn in proc.net_connections(kind="tcp"):
                    rows.append(_Connection(laddr=conn.laddr, status=conn.status, pid=proc.pid))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return rows

    @staticmethod
    def _describe(pid: Optional[int]) -> PortHolder:
        if pid is None:
            return PortHolder(pid=None, name="unknown")
        try:
            return PortHolder(pid=pid, name=psutil.Process(pid).name())
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return PortHolder(pid=pid, name="unknown")
