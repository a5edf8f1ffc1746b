"""Daemon subsystem: lifecycle controller, process transport, and command protocol."""

from dmypy_ls.daemon.controller import DaemonController as DaemonController
from dmypy_ls.daemon.controller import DaemonState as DaemonState
from dmypy_ls.daemon.controller import DaemonStatus as DaemonStatus
from dmypy_ls.daemon.process import DmypyTransport as DmypyTransport
from dmypy_ls.daemon.protocol import DaemonResult as DaemonResult
